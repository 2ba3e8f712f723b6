"""
Atomic transaction helpers

Every balance mutation and the TransactionRecord write that accompanies it run
inside one ``atomic_transaction``. Nested uses share the outermost unit of
work: only the outermost block commits, and any error rolls the whole unit back.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_DEPTH_ATTR = '_atomic_transaction_depth'


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Run a block as one ledger unit of work.

    With no session a new one is created from SessionLocal and closed afterwards.
    With a provided session, the nesting depth is tracked on the session so inner
    service calls defer the commit to the outermost block.
    """
    if session is None:
        from database import SessionLocal

        owned = SessionLocal()
        try:
            yield owned
            owned.commit()
        except Exception as e:
            owned.rollback()
            logger.error(f"❌ Ledger unit of work rolled back: {e}")
            raise
        finally:
            owned.close()
        return

    depth = getattr(session, _DEPTH_ATTR, 0)
    setattr(session, _DEPTH_ATTR, depth + 1)
    try:
        yield session

        if depth == 0:
            session.commit()
        else:
            logger.debug(f"Nested unit of work done at depth {depth + 1}, commit deferred")

    except Exception as e:
        # The outermost block owns the rollback; inner blocks just re-raise
        if depth == 0:
            session.rollback()
            logger.warning(f"⚠️ Ledger unit of work rolled back: {e}")
        raise
    finally:
        setattr(session, _DEPTH_ATTR, max(0, getattr(session, _DEPTH_ATTR, 1) - 1))
