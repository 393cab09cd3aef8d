"""Recipe compilation and job orchestration core for the dialectic pipeline."""

__version__ = "0.1.0"
