"""Keeps a Bedrock knowledge base in sync with its S3 data source."""

__version__ = "0.1.0"
