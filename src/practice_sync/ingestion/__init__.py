"""Three-stage ingestion: raw capture, normalization, embedding."""
