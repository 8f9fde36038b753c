"""
Lending system wiring and error translation shared by the API routers
"""

import threading
from typing import Optional

from fastapi import HTTPException, status

from ..audit import AuditTrail
from ..config import LendingConfig, get_config
from ..exceptions import (
    AllocationRejectedError, ConcurrentModificationError, LateFeeOverpaymentError,
    LoanNotFoundError, RecordExistsError
)
from ..servicing import LoanServicer
from ..storage import InMemoryStorage, StorageInterface, create_storage


class LendingSystem:
    """Storage, audit trail and servicer initialized together"""

    def __init__(self, config: Optional[LendingConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        if storage is None:
            storage = create_storage(self.config.database_url) if self.config.use_sqlite else InMemoryStorage()
        self.storage = storage
        self.audit_trail = AuditTrail(self.storage)
        self.servicer = LoanServicer(self.storage, self.audit_trail, self.config)


_lending_system: Optional[LendingSystem] = None
_system_lock = threading.Lock()


# Dependency to get lending system; tests override it through app.dependency_overrides
def get_lending_system() -> LendingSystem:
    global _lending_system
    with _system_lock:
        if _lending_system is None:
            _lending_system = LendingSystem()
        return _lending_system


def to_http_exception(error: Exception) -> HTTPException:
    """Map a LendingError or ValueError to an HTTP response"""
    if isinstance(error, LoanNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.args[0])
    if isinstance(error, (ConcurrentModificationError, RecordExistsError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, AllocationRejectedError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={
            "error": "allocation_rejected",
            "message": str(error),
            "proposed_amount": str(error.proposed_amount),
            "remaining_balance": str(error.remaining_balance),
        })
    if isinstance(error, LateFeeOverpaymentError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={
            "error": "late_fee_overpayment",
            "message": str(error),
            "leftover": str(error.leftover),
            "applied": str(error.applied),
        })
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
