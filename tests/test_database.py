"""
Build Chain - Database Tests
============================

Engine selection and the session factory shared by the API and the pipeline.
"""

from pathlib import Path

from buildchain.core.database import create_engine, create_session_factory, init_db
from buildchain.core.models import BuildSession, BuildStatus


class TestEngine:

    async def test_sqlite_url(self, tmp_path: Path):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'db.sqlite'}")
        try:
            assert engine.dialect.name == "sqlite"
        finally:
            await engine.dispose()


class TestSessionFactory:

    async def test_objects_stay_loaded_after_commit(self, tmp_path: Path):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'db.sqlite'}")
        await init_db(bind=engine)
        factory = create_session_factory(engine)

        try:
            async with factory() as db:
                session = BuildSession(
                    requester_id="user-1",
                    channel="telegram",
                    locale="en",
                    request_text="build me a todo cli app",
                    status=BuildStatus.RUNNING,
                )
                db.add(session)
                await db.commit()

            # Readable without a refresh once the session is closed
            assert session.requester_id == "user-1"
            assert session.status == BuildStatus.RUNNING
            assert session.id is not None
        finally:
            await engine.dispose()
