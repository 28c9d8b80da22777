"""Deploy step ledger."""
