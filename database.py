from sqlalchemy import (
    create_engine, Column, String, DateTime, Text, Integer, JSON, UniqueConstraint,
    select as sa_select, func, update as sa_update, delete as sa_delete,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional, Sequence
from fastapi import Request
import uuid
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    # Naive UTC, matching what the DateTime columns hand back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Project(Base):
    __tablename__ = 'projects'

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    url = Column(Text, nullable=False)  # site root
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Job(Base):
    __tablename__ = 'jobs'

    id = Column(String, primary_key=True, index=True, default=new_id)
    project_id = Column(String, nullable=True, index=True)
    type = Column(String, default='audit')
    status = Column(String, default='queued', index=True)  # queued, processing, partial, completed, failed
    config = Column(JSON, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    # Durable pointer to the stage that has to run next
    next_stage = Column(String, nullable=True, index=True)
    next_stage_payload = Column(JSON, nullable=True)
    next_stage_at = Column(DateTime, nullable=True)
    next_stage_attempts = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class JobState(Base):
    __tablename__ = 'job_state'

    job_id = Column(String, primary_key=True)
    cursor = Column(JSON, nullable=True)
    batch_progress = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow)


class ExecutionLog(Base):
    __tablename__ = 'execution_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, index=True)
    function_name = Column(String, nullable=False)
    level = Column(String, nullable=False)  # info, warn, error
    message = Column(Text, nullable=False)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class Page(Base):
    __tablename__ = 'pages'
    __table_args__ = (UniqueConstraint('project_id', 'url', name='uq_pages_project_url'),)

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, nullable=False, index=True)
    url = Column(Text, nullable=False)
    title = Column(Text, nullable=True)
    meta_description = Column(Text, nullable=True)
    h1 = Column(Text, nullable=True)
    word_count = Column(Integer, default=0)
    technical_score = Column(Integer, nullable=True)
    content_score = Column(Integer, nullable=True)
    seo_score = Column(Integer, nullable=True)
    ai_analysis = Column(JSON, nullable=True)
    on_page_data = Column(JSON, nullable=True)
    ai_status = Column(String, default='pending', index=True)  # pending, processing, completed, failed
    last_audited = Column(DateTime, nullable=True)


class Report(Base):
    __tablename__ = 'reports'
    __table_args__ = (
        UniqueConstraint('project_id', 'job_id', 'report_type', name='uq_reports_project_job_type'),
    )

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, nullable=False, index=True)
    job_id = Column(String, nullable=True)
    report_type = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(JSON, nullable=True)
    generated_at = Column(DateTime, default=utcnow)


TABLES = {model.__tablename__: model for model in (Project, Job, JobState, ExecutionLog, Page, Report)}


def create_db_engine(database_url: str) -> Engine:
    """Create engine with connection pooling"""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=False
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine: Engine):
    """Create all tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        raise


def get_db(request: Request) -> Generator[Session, None, None]:
    """Database session dependency"""
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


# Filter value matching any non-null column value
NOT_NULL = object()


def row_to_dict(row) -> Dict[str, Any]:
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}


class RecordStore:
    """Keyed-record operations over the pipeline tables.

    Rows go in and come out as plain dicts so that stages never hold ORM
    objects across awaits. Filters are equality matches on column names.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _model(self, table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}")

    def _where(self, model, filters: Optional[Dict[str, Any]]):
        clauses = []
        for key, value in (filters or {}).items():
            column = getattr(model, key)
            if isinstance(value, (list, tuple, set)):
                clauses.append(column.in_(list(value)))
            elif value is NOT_NULL:
                clauses.append(column.is_not(None))
            elif value is None:
                clauses.append(column.is_(None))
            else:
                clauses.append(column == value)
        return clauses

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        model = self._model(table)
        stmt = sa_select(model).where(*self._where(model, filters))
        if order_by:
            column = getattr(model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.session_factory() as db:
            return [row_to_dict(row) for row in db.execute(stmt).scalars().all()]

    def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.select(table, filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        model = self._model(table)
        with self.session_factory() as db:
            try:
                record = model(**row)
                db.add(record)
                db.commit()
                db.refresh(record)
                return row_to_dict(record)
            except Exception:
                db.rollback()
                raise

    def upsert(self, table: str, row: Dict[str, Any], conflict_key: Sequence[str]) -> Dict[str, Any]:
        """Insert or update on the natural key ``conflict_key``."""
        model = self._model(table)
        conflict_key = list(conflict_key)
        with self.session_factory() as db:
            try:
                dialect = db.get_bind().dialect.name
                if dialect in ("postgresql", "sqlite"):
                    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
                    stmt = insert(model).values(**row)
                    updates = {k: stmt.excluded[k] for k in row if k not in conflict_key and k != "id"}
                    if updates:
                        stmt = stmt.on_conflict_do_update(index_elements=conflict_key, set_=updates)
                    else:
                        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_key)
                    db.execute(stmt)
                else:
                    existing = db.execute(
                        sa_select(model).where(*self._where(model, {k: row[k] for k in conflict_key}))
                    ).scalars().first()
                    if existing is None:
                        db.add(model(**row))
                    else:
                        for key, value in row.items():
                            if key not in conflict_key and key != "id":
                                setattr(existing, key, value)
                db.commit()
            except Exception:
                db.rollback()
                raise
            record = db.execute(
                sa_select(model).where(*self._where(model, {k: row[k] for k in conflict_key}))
            ).scalars().first()
            return row_to_dict(record)

    def update(self, table: str, patch: Dict[str, Any], filters: Dict[str, Any]) -> int:
        model = self._model(table)
        if hasattr(model, "updated_at") and "updated_at" not in patch:
            patch = {**patch, "updated_at": utcnow()}
        with self.session_factory() as db:
            try:
                result = db.execute(sa_update(model).where(*self._where(model, filters)).values(**patch))
                db.commit()
                return result.rowcount
            except Exception:
                db.rollback()
                raise

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        model = self._model(table)
        with self.session_factory() as db:
            try:
                result = db.execute(sa_delete(model).where(*self._where(model, filters)))
                db.commit()
                return result.rowcount
            except Exception:
                db.rollback()
                raise

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        model = self._model(table)
        stmt = sa_select(func.count()).select_from(model).where(*self._where(model, filters))
        with self.session_factory() as db:
            return db.execute(stmt).scalar_one()

