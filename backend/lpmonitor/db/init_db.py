from sqlmodel import SQLModel
from lpmonitor.db import models  # noqa: F401  registers tables
from lpmonitor.db.engine import get_engine


def init_db():
    SQLModel.metadata.create_all(get_engine())
