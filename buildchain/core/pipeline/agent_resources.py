"""
Agent Resource Manager - Shared agent definition files.

Materializes agent definitions as `<root>/.claude/agents/<identity>.md` for
the agent execution service to pick up, shared between concurrent sessions
through per-identity reference counts.
"""

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator

import structlog

from buildchain.core.pipeline.catalogs import AgentDefinitionSource, validate_agent_name
from buildchain.core.pipeline.errors import ResourceAcquisitionError

logger = structlog.get_logger()


@dataclass(eq=False)
class AgentResourceHandle:
    """Lease on one materialized agent definition."""
    agent_identity: str
    path: Path
    released: bool = field(default=False, repr=False)


class AgentResourceManager:
    """
    Reference-counted agent definition files.

    Invariants (per identity):
    - the file exists if and only if the count is positive
    - the count never goes negative
    - the first acquire writes the file, later ones only increment

    Acquire and release for one identity are serialized by a per-identity
    lock; different identities never contend.
    """

    AGENTS_SUBDIR = Path(".claude") / "agents"

    def __init__(self, root_dir: Path, definitions: AgentDefinitionSource):
        self.root_dir = Path(root_dir)
        self.agents_dir = self.root_dir / self.AGENTS_SUBDIR
        self.definitions = definitions
        self._counts: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, agent_identity: str) -> asyncio.Lock:
        return self._locks.setdefault(agent_identity, asyncio.Lock())

    def path_for(self, agent_identity: str) -> Path:
        return self.agents_dir / f"{agent_identity}.md"

    def active_count(self, agent_identity: str) -> int:
        """Current number of live handles for an identity."""
        return self._counts.get(agent_identity, 0)

    async def acquire(self, agent_identity: str) -> AgentResourceHandle:
        """
        Lease an agent definition, writing it on first use.

        Raises:
            ResourceAcquisitionError: If the definition is unknown or cannot be written
        """
        try:
            validate_agent_name(agent_identity)
        except ValueError as e:
            raise ResourceAcquisitionError(str(e)) from e

        path = self.path_for(agent_identity)

        async with self._lock_for(agent_identity):
            count = self._counts.get(agent_identity, 0)
            if count == 0:
                try:
                    await asyncio.to_thread(self._materialize, agent_identity, path)
                except KeyError as e:
                    raise ResourceAcquisitionError(
                        f"no definition for agent '{agent_identity}'"
                    ) from e
                except OSError as e:
                    raise ResourceAcquisitionError(
                        f"failed to write agent '{agent_identity}': {e}"
                    ) from e
                logger.info("agent_materialized", agent=agent_identity, path=str(path))

            self._counts[agent_identity] = count + 1

        return AgentResourceHandle(agent_identity=agent_identity, path=path)

    async def release(self, handle: AgentResourceHandle) -> None:
        """Drop a lease; the last one out removes the file."""
        identity = handle.agent_identity

        async with self._lock_for(identity):
            if handle.released:
                return
            handle.released = True

            count = self._counts.get(identity, 0)
            if count <= 0:
                logger.warning("agent_release_without_lease", agent=identity)
                return

            if count > 1:
                self._counts[identity] = count - 1
                return

            del self._counts[identity]
            await asyncio.to_thread(self._remove, handle.path)
            logger.info("agent_removed", agent=identity)

    @asynccontextmanager
    async def lease(self, agent_identity: str) -> AsyncIterator[AgentResourceHandle]:
        """Scoped acquisition; the handle is released on every exit path."""
        handle = await self.acquire(agent_identity)
        try:
            yield handle
        finally:
            # Shielded so a cancelled task still gives its lease back
            await asyncio.shield(self.release(handle))

    async def purge_orphans(self) -> list[str]:
        """
        Remove agent files left behind by a crashed process.

        Only identities with no live lease are touched.
        """
        if not self.agents_dir.is_dir():
            return []

        removed = []
        for path in sorted(self.agents_dir.glob("*.md")):
            identity = path.stem
            async with self._lock_for(identity):
                if self._counts.get(identity, 0) > 0:
                    continue
                await asyncio.to_thread(self._remove, path)
                removed.append(identity)

        if removed:
            logger.info("agent_orphans_purged", agents=removed)
        return removed

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def _materialize(self, agent_identity: str, path: Path) -> None:
        content = self.definitions.get(agent_identity)

        # Another identity's release may rmdir the shared directory between
        # mkdir and mkstemp
        for attempt in range(3):
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                fd, tmp_name = tempfile.mkstemp(
                    dir=path.parent, prefix=f".{agent_identity}.", suffix=".tmp"
                )
                break
            except FileNotFoundError:
                if attempt == 2:
                    raise

        # Write then rename so readers never see a partial file
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        # Drop agents/ and .claude/ once empty
        for directory in (self.agents_dir, self.agents_dir.parent):
            try:
                directory.rmdir()
            except OSError:
                break
