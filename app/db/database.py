"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class.
"""
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from core.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    """
    Create the SQLAlchemy engine.

    Connection pool settings only apply to server databases; SQLite
    gets check_same_thread disabled so sockets and the threadpool can share it.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.log_level == "DEBUG"
        )
    return create_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=settings.db_pool_recycle,
        echo=settings.log_level == "DEBUG"
    )


engine = build_engine(settings.database_url)

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class for models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called once during application setup.
    """
    from db import models  # noqa: F401  (registers models with Base)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def seed_db() -> None:
    """
    Seed an empty database with a client, a freelancer, a shared task and a
    conversation so the socket layer can be exercised locally.
    """
    from db.models import User, UserRole, Task, Conversation, ConversationParticipant

    db = SessionLocal()
    try:
        existing_users = db.query(User).count()
        if existing_users > 0:
            logger.info(f"Database already seeded ({existing_users} users exist)")
            return

        client = User(email="client@example.com", name="Demo Client", role=UserRole.CLIENT)
        freelancer = User(email="freelancer@example.com", name="Demo Freelancer", role=UserRole.FREELANCER)
        db.add_all([client, freelancer])
        db.flush()

        db.add(Task(title="Landing page redesign", client_id=client.id, freelancer_id=freelancer.id))

        conversation = Conversation()
        db.add(conversation)
        db.flush()
        db.add_all([
            ConversationParticipant(conversation_id=conversation.id, user_id=client.id),
            ConversationParticipant(conversation_id=conversation.id, user_id=freelancer.id),
        ])

        db.commit()
        logger.info("Database seeded with demo users, task and conversation")

    except Exception as e:
        db.rollback()
        logger.error(f"Error seeding database: {e}")
        raise
    finally:
        db.close()
