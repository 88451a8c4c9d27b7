#!/usr/bin/env python3
"""
Database initialization script for HiveGate
Creates the users and audit_logs tables and optionally seeds an admin account
(ADMIN_USERNAME / ADMIN_EMAIL / ADMIN_PASSWORD).
"""
import asyncio
import os
from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession

from hivegate.models.user import Base
from hivegate.models.audit_log import AuditLog  # noqa: F401 (registers the audit_logs table)
from hivegate.services.credential_store import CredentialStore
from hivegate.services.errors import Conflict

# Load environment variables
load_dotenv()


async def seed_admin(session: AsyncSession):
    """Create the admin account if it is configured and missing"""
    username = os.getenv("ADMIN_USERNAME")
    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not (username and email and password):
        print("ℹ️  ADMIN_* variables not set, skipping admin seed")
        return

    store = CredentialStore(session)
    try:
        user = await store.register(username, email, password, role="admin")
        print(f"✅ Created admin user {user.username} with ID: {user.id}")
    except Conflict:
        print(f"✅ Admin user already exists: {username}")


async def create_tables():
    """Create all database tables"""

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("❌ DATABASE_URL not found in environment variables")
        return

    print(f"🔌 Connecting to database: {database_url.split('@')[-1]}")
    engine = create_async_engine(database_url)

    try:
        print("📝 Creating tables...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("✅ All tables created successfully!")

        async with AsyncSession(engine, expire_on_commit=False) as session:
            await seed_admin(session)
    finally:
        await engine.dispose()

if __name__ == "__main__":
    print("🚀 Initializing HiveGate database...")
    asyncio.run(create_tables())
    print("🎉 Database initialization complete!")
