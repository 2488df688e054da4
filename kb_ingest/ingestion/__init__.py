"""Knowledge-base ingestion: event parsing, job coordination, local buffering."""
