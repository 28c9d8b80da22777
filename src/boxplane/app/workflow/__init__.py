"""Workflow engine: DAG execution, retries, and repeatable jobs."""
