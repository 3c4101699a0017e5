from __future__ import annotations

from bankrecon.db.base import Base
from bankrecon.db.session import ENGINE
from bankrecon.models import models  # noqa: F401  (ensure models are imported)


def init_db(engine=None) -> None:
    Base.metadata.create_all(bind=engine or ENGINE)
