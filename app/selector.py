"""
Capacity-aware placement of uploads onto connected Drive accounts.

``select_account`` is the pure placement rule. ``CapacityLedger`` layers
in-memory reservations on top of it so that two uploads racing for the same
account can't both be admitted against the same free space.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)

GB = 1024 ** 3


def bytes_to_gb(n: int) -> float:
    return n / GB


def select_account(accounts: Iterable, file_size_bytes: int, reserved: Optional[Dict[int, float]] = None):
    """Pick the account with the most free space that can still hold the file.

    ``accounts`` need ``used_space_gb`` and ``total_space_gb`` (and ``id`` when
    ``reserved`` is given). Returns None when nothing fits; a file is never
    split across accounts. Ties go to the earliest account in input order.
    """
    if file_size_bytes < 0:
        raise ValueError("file size must be >= 0")
    size_gb = bytes_to_gb(file_size_bytes)
    reserved = reserved or {}

    best = None
    best_free = None
    for account in accounts:
        used = (account.used_space_gb or 0.0) + reserved.get(getattr(account, "id", None), 0.0)
        total = account.total_space_gb or 0.0
        if used + size_gb > total:
            continue
        free = total - used
        if best is None or free > best_free:
            best, best_free = account, free
    return best


@dataclass
class Reservation:
    account_id: int
    size_gb: float
    released: bool = False


class CapacityLedger:
    """Space promised to in-flight uploads that isn't in ``used_space_gb`` yet.

    Callers pass freshly loaded accounts to ``reserve``; the reservation is
    dropped with ``release`` once the upload either committed its size to the
    database or failed.
    """

    def __init__(self):
        self._reserved: Dict[int, float] = {}
        self._lock = threading.Lock()

    def reserved_gb(self, account_id: int) -> float:
        with self._lock:
            return self._reserved.get(account_id, 0.0)

    def reserve(self, accounts, file_size_bytes: int, preferred=None) -> Optional[Reservation]:
        with self._lock:
            if preferred is not None:
                # explicit choice from the client, capacity is not checked
                account = preferred
            else:
                account = select_account(accounts, file_size_bytes, reserved=self._reserved)
                if account is None:
                    return None
            size_gb = bytes_to_gb(file_size_bytes)
            self._reserved[account.id] = self._reserved.get(account.id, 0.0) + size_gb
            logger.debug("reserved %.6f GB on account %s", size_gb, account.id)
            return Reservation(account_id=account.id, size_gb=size_gb)

    def release(self, reservation: Reservation):
        with self._lock:
            if reservation.released:
                return
            reservation.released = True
            left = self._reserved.get(reservation.account_id, 0.0) - reservation.size_gb
            if left <= 1e-12:
                self._reserved.pop(reservation.account_id, None)
            else:
                self._reserved[reservation.account_id] = left
