"""groupshare-sync: offline-first sync of shared songs, setlists and annotations."""

__version__ = "0.3.0"
