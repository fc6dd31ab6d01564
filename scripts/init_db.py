#!/usr/bin/env python
from quotagate.deps import Base, engine
from quotagate import models  # noqa: F401  registers the tables


def init_db():
    """Initialize the database by creating all tables"""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    print("Database tables created successfully!")


if __name__ == "__main__":
    init_db()
