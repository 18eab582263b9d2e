"""S3 access for archived document texts."""
