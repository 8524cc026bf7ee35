"""Error taxonomy shared by the ledger services and the HTTP layer."""


class ValidationError(ValueError):
    """Input has the wrong shape (non-positive amount, bad transfer, ...)."""


class NotFoundError(ValueError):
    """A referenced transaction, budget, account or category does not exist."""


class IntegrityError(ValueError):
    """The store rejected a write on a referential or check constraint."""


class TransientStoreError(RuntimeError):
    """The store is locked or busy; the operation may succeed if retried."""


class CacheInconsistencyWarning(RuntimeWarning):
    """Budget cache invalidation failed after the ledger write committed."""
