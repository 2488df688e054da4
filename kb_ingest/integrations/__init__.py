"""AWS service adapters for the ingestion coordinator."""
