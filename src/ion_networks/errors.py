from __future__ import annotations


class IonNetworkError(Exception):
    """Base class for errors raised by ion_networks."""


class ConfigurationError(IonNetworkError, ValueError):
    """Invalid configuration; raised before any processing starts."""


class ScanMismatchError(IonNetworkError):
    """Two features disagree on scan identity inside their overlapping scan range."""

    def __init__(self, row_a: int, row_b: int, sample: str, message: str = ""):
        self.row_a = int(row_a)
        self.row_b = int(row_b)
        self.sample = str(sample)
        text = f"Scan numbers of rows {self.row_a} and {self.row_b} do not align in sample {self.sample!r}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)


class MissingMassListError(IonNetworkError, LookupError):
    """A fragmentation scan does not carry the requested mass list."""

    def __init__(self, mass_list: str, scan_number: int = -1, row_id: int = -1):
        self.mass_list = str(mass_list)
        self.scan_number = int(scan_number)
        self.row_id = int(row_id)
        super().__init__(
            f"No mass list {self.mass_list!r} in scan {self.scan_number} (row {self.row_id})."
        )
