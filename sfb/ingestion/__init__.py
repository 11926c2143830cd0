"""Visit ingestion: strict records, row-level validation and the immutable Visit Store."""
