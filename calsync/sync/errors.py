"""Sync engine exceptions."""


class SyncConfigurationError(Exception):
    """A subscription cannot be synced as configured; aborts only that run."""


class StaleSubscriptionError(Exception):
    """The subscription row changed underneath the current run."""
