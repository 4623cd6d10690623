from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConflictError


def session(engine: Engine) -> Session:
    # Handlers build their responses from ORM objects after the unit of work
    # has committed. Prevent attributes from being expired on commit to avoid
    # DetachedInstanceError.
    return Session(engine, expire_on_commit=False)


@contextmanager
def unit_of_work(engine: Engine) -> Iterator[Session]:
    """
    One transaction per mutation.

    Everything written inside the block commits together or not at all. A
    concurrent writer that bumped a version counter first surfaces as a
    ConflictError; the caller should re-read and retry.
    """
    with session(engine) as s:
        try:
            with s.begin():
                yield s
        except StaleDataError as e:
            raise ConflictError("The record was modified by another request. Reload and try again.") from e
