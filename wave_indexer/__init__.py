"""wave-indexer: Ledger event ingestion, reconciliation and live fan-out."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("wave-indexer")
except PackageNotFoundError:
    __version__ = "0.0.0"
