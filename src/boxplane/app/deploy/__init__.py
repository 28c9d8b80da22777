"""Box deployment orchestration."""
