from sqlmodel import create_engine, Session
from lpmonitor.config import get_settings

_engine = None


def get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        _engine = create_engine(settings.database_url, echo=False, connect_args=connect_args)
    return _engine


def get_session():
    return Session(get_engine())
