"""Recipe storage with versioned updates and lifecycle notifications."""

__version__ = "0.1.0"
