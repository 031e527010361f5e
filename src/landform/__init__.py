"""landform: declarative resource reconciliation with locked remote state."""

__version__ = "0.1.0"
