class IngestError(Exception):
    pass


class PartitionMissingError(IngestError):
    pass


class PartitionInvalidError(IngestError):
    pass


class UnrecognizedFormatError(IngestError):
    pass


class StructuralParseError(IngestError):
    pass


class RowValidationError(IngestError):
    def __init__(self, row_number: int, message: str) -> None:
        super().__init__(message)
        self.row_number = row_number
        self.message = message


class DuplicateFileError(IngestError):
    def __init__(self, batch_id: int, fingerprint: str) -> None:
        super().__init__(
            f"file already imported under this partition as batch {batch_id} "
            f"(fingerprint {fingerprint[:16]})"
        )
        self.batch_id = batch_id
        self.fingerprint = fingerprint


class DuplicateRowError(IngestError):
    def __init__(self, vendor: str, external_trip_id: str) -> None:
        super().__init__(f"trip {external_trip_id} already imported for vendor {vendor}")
        self.vendor = vendor
        self.external_trip_id = external_trip_id


class AppendOnlyViolation(RuntimeError):
    pass
