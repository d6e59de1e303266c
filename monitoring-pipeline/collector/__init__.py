"""Host agent: samples resource metrics and ships them to the ingest API."""
