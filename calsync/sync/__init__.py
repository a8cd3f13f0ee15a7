"""Calendar sync engine module."""
