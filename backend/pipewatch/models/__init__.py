from pipewatch.models.record import StoredRecord  # noqa: F401
