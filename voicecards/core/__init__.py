"""Domain records and concurrency helpers."""
