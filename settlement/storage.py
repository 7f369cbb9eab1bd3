import copy
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .models import PaymentStatus


EnrollmentKey = tuple[str, str, str, Optional[str]]
CommissionKey = tuple[str, str]

_TABLES = (
    "payments",
    "enrollments",
    "commission_entries",
    "referrers",
    "payout_batches",
    "referrals",
)

_MISSING = object()


class JournaledTable(dict):
    """A table that remembers each row's state from before the open transaction.

    A row is copied the first time a transaction reaches it by key or through
    ``find``/``select``. Handing out every row at once (``values``/``items``)
    copies the whole table once.
    Outside a transaction it is a plain dict.
    """

    def __init__(self):
        super().__init__()
        self._journal: Optional[dict] = None
        self._before_all: Optional[dict] = None

    def begin(self) -> None:
        self._journal = {}
        self._before_all = None

    def end(self) -> None:
        self._journal = None
        self._before_all = None

    def rollback(self) -> None:
        if self._journal is None:
            return
        if self._before_all is not None:
            dict.clear(self)
            dict.update(self, self._before_all)
        else:
            for key, before in self._journal.items():
                if before is _MISSING:
                    dict.pop(self, key, None)
                else:
                    dict.__setitem__(self, key, before)
        self.end()

    def _touch(self, key) -> None:
        if self._journal is None or self._before_all is not None or key in self._journal:
            return
        row = dict.get(self, key, _MISSING)
        self._journal[key] = _MISSING if row is _MISSING else copy.deepcopy(row)

    def _touch_all(self) -> None:
        if self._journal is None or self._before_all is not None:
            return
        before = {key: copy.deepcopy(dict.__getitem__(self, key)) for key in dict.keys(self)}
        # Rows already journaled were copied before the block changed them.
        for key, row in self._journal.items():
            if row is _MISSING:
                before.pop(key, None)
            else:
                before[key] = row
        self._before_all = before

    def find(self, predicate: Callable[[dict], bool]) -> Optional[dict]:
        """First row matching ``predicate``. Only that row is journaled."""
        for key, row in dict.items(self):
            if predicate(row):
                self._touch(key)
                return row
        return None

    def select(self, predicate: Callable[[dict], bool]) -> list[dict]:
        matched = [key for key, row in dict.items(self) if predicate(row)]
        for key in matched:
            self._touch(key)
        return [dict.__getitem__(self, key) for key in matched]

    def __getitem__(self, key):
        self._touch(key)
        return dict.__getitem__(self, key)

    def get(self, key, default=None):
        self._touch(key)
        return dict.get(self, key, default)

    def __setitem__(self, key, value):
        self._touch(key)
        dict.__setitem__(self, key, value)

    def __delitem__(self, key):
        self._touch(key)
        dict.__delitem__(self, key)

    def pop(self, key, *default):
        self._touch(key)
        return dict.pop(self, key, *default)

    def setdefault(self, key, default=None):
        self._touch(key)
        return dict.setdefault(self, key, default)

    def values(self):
        self._touch_all()
        return dict.values(self)

    def items(self):
        self._touch_all()
        return dict.items(self)

    def update(self, *args, **kwargs):
        self._touch_all()
        dict.update(self, *args, **kwargs)

    def clear(self):
        self._touch_all()
        dict.clear(self)


class InMemoryStorage:
    """Document store with all-or-nothing transactions.

    Rows are plain dicts; services build pydantic models on the way out.
    A transaction holds one re-entrant lock for its whole block, so
    transactions are serialized. Nested transactions join the outermost one,
    and if the outermost block raises every row it reached is put back the
    way it was. Readers take the same lock through ``read()`` so they never
    see a transaction half applied.
    """

    def __init__(self):
        self.payments = JournaledTable()
        self.enrollments = JournaledTable()
        self.commission_entries = JournaledTable()
        self.referrers = JournaledTable()
        self.payout_batches = JournaledTable()
        self.referrals = JournaledTable()
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            tables = self._tables()
            for table in tables:
                table.begin()
            self._depth = 1
            try:
                yield self
            except BaseException:
                for table in tables:
                    table.rollback()
                raise
            finally:
                for table in tables:
                    table.end()
                self._depth = 0

    @contextmanager
    def read(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            yield self

    def transition_payment(
        self,
        reference: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        **fields,
    ) -> bool:
        """Set ``status=new`` only where ``status=expected``; True if this call won."""
        with self._lock:
            row = self.payments.get(reference)
            if row is None or row["status"] != expected:
                return False
            row["status"] = new
            row.update(fields)
            return True

    def _tables(self) -> list[JournaledTable]:
        return [getattr(self, name) for name in _TABLES]


def enrollment_key(buyer_id: str, subject: str, grade: str, term: Optional[str]) -> EnrollmentKey:
    return (buyer_id, subject, grade, term)
