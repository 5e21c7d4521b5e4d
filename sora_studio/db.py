# Database engine, sessions and table creation

from sqlmodel import SQLModel, create_engine, Session

from .config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=connect_args)

def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)

def session_factory(bind=None):
    """Return a callable that opens a new Session on `bind` (defaults to the app engine)."""
    target = bind or engine
    return lambda: Session(target)

def get_session():
    with Session(engine) as session:
        yield session
