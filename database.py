import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from models import Base, Crawl, Website

logger = logging.getLogger(__name__)

_session_factory = None


class RecordNotFound(LookupError):
    pass


def init_db(db_url=None):
    """Create the engine and tables, returning a session factory."""
    db_url = db_url or get_settings().database_url
    engine_kwargs = {}
    if db_url.startswith('sqlite'):
        # Sessions are opened from the crawl thread and the Streamlit script thread.
        engine_kwargs['connect_args'] = {'check_same_thread': False}
        if db_url in ('sqlite://', 'sqlite:///:memory:'):
            engine_kwargs['poolclass'] = StaticPool
    engine = create_engine(db_url, **engine_kwargs)
    Base.metadata.create_all(engine)
    logger.info("Database ready: %s", engine.url)
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_session_factory():
    """Return the process-wide session factory, creating it on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = init_db()
    return _session_factory


class EntityStore:
    """Create/read/update/list access to one model.

    Every call runs in its own session and returns detached records, so
    callers can keep using them after the call returns.
    """

    def __init__(self, session_factory, model):
        self.session_factory = session_factory
        self.model = model

    @contextmanager
    def session_scope(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error on {self.model.__tablename__}: {str(e)}")
            session.rollback()
            raise
        finally:
            session.close()

    def create(self, **fields):
        record = self.model(**fields)
        with self.session_scope() as session:
            session.add(record)
            session.flush()
        return record

    def get(self, record_id):
        with self.session_scope() as session:
            return session.get(self.model, record_id)

    def update(self, record_id, **fields):
        with self.session_scope() as session:
            record = session.get(self.model, record_id)
            if record is None:
                raise RecordNotFound(f"{self.model.__name__} {record_id} does not exist")
            for name, value in fields.items():
                setattr(record, name, value)
        return record

    def list(self, order_by='-created_date', limit=None, **filters):
        """List records ordered by ``order_by`` (``-`` prefix for descending).

        Keyword filters match exactly; a list, tuple or set value matches any
        of its members.
        """
        with self.session_scope() as session:
            query = session.query(self.model)
            for name, value in filters.items():
                column = getattr(self.model, name)
                if isinstance(value, (list, tuple, set, frozenset)):
                    query = query.filter(column.in_(list(value)))
                else:
                    query = query.filter(column == value)
            if order_by:
                descending = order_by.startswith('-')
                column = getattr(self.model, order_by.lstrip('-'))
                tiebreak = self.model.id
                if descending:
                    query = query.order_by(column.desc(), tiebreak.desc())
                else:
                    query = query.order_by(column.asc(), tiebreak.asc())
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def filter(self, **fields):
        return self.list(order_by=None, **fields)


class Stores:
    """The two entity stores the crawler works with."""

    def __init__(self, session_factory=None):
        session_factory = session_factory or get_session_factory()
        self.websites = EntityStore(session_factory, Website)
        self.crawls = EntityStore(session_factory, Crawl)
