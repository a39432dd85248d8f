"""Capability interfaces for external collaborators, plus local defaults.

The engine never talks to source control, worker pools, chat/mail, artifact
storage or secret vaults directly. It receives objects implementing the
protocols below. The default implementations are enough for local runs and
tests:

    - ``LocalSourceControl``     — a repository reference is a local directory
    - ``LocalAgentPool``         — hands out named in-process agent handles
    - ``LoggingNotificationSink``— logs and records messages
    - ``WebhookNotificationSink``— posts JSON to a chat webhook via httpx
    - ``LocalArtifactStore``     — globs the workspace, optionally copies files
    - ``EnvSecretStore`` / ``MappingSecretStore``
    - ``ApprovalBroker``         — asyncio futures resolved by ``decide()``
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from conveyor.pipeline.models import AgentSpec

logger = logging.getLogger("conveyor.pipeline.interfaces")


# ── Handles ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AgentHandle:
    """An acquired execution resource (machine, container, local slot)."""

    name: str
    spec: str
    workspace: Path | None = None


@dataclass(frozen=True)
class WorkspaceHandle:
    """A checked-out source tree."""

    repo: str
    path: Path
    revision: str | None = None


@dataclass
class ApprovalDecision:
    approved: bool
    by: str = ""
    comment: str = ""


# ── Protocols ────────────────────────────────────────────────────────────────


@runtime_checkable
class SourceControlProvider(Protocol):
    async def fetch(self, repo_ref: str, *, revision: str | None = None) -> WorkspaceHandle:
        """Materialize a repository. Raises on failure."""
        ...


@runtime_checkable
class AgentPool(Protocol):
    async def acquire(self, spec: AgentSpec) -> AgentHandle:
        ...

    async def release(self, handle: AgentHandle) -> None:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    async def send(self, target: str, message: str) -> None:
        """Deliver a message. Raises on delivery failure."""
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    async def store(self, pattern: str, metadata: dict[str, Any]) -> dict[str, Any]:
        """Store files matching ``pattern`` and return a manifest."""
        ...


@runtime_checkable
class SecretStore(Protocol):
    async def resolve(self, secret_id: str) -> str:
        """Return the secret value. Raises KeyError if unknown."""
        ...


# ── Source control ───────────────────────────────────────────────────────────


class LocalSourceControl:
    """Treats a repository reference as a path on the local filesystem."""

    def __init__(self, base_dir: Path | None = None):
        self._base_dir = base_dir

    async def fetch(self, repo_ref: str, *, revision: str | None = None) -> WorkspaceHandle:
        path = Path(repo_ref)
        if self._base_dir and not path.is_absolute():
            path = self._base_dir / path
        if not path.is_dir():
            msg = f"Repository not found: {repo_ref}"
            raise FileNotFoundError(msg)
        logger.info("Checked out %s (revision=%s)", path, revision or "HEAD")
        return WorkspaceHandle(repo=repo_ref, path=path.resolve(), revision=revision)


# ── Agents ───────────────────────────────────────────────────────────────────


class LocalAgentPool:
    """Hands out in-process agent handles; tracks what is currently held."""

    def __init__(self, workspace: Path | None = None):
        self._workspace = workspace
        self._counter = itertools.count(1)
        self.active: dict[str, AgentHandle] = {}
        self.acquired_total = 0

    async def acquire(self, spec: AgentSpec) -> AgentHandle:
        handle = AgentHandle(
            name=f"local-{next(self._counter)}",
            spec=spec.describe(),
            workspace=self._workspace,
        )
        self.active[handle.name] = handle
        self.acquired_total += 1
        logger.debug("Acquired agent %s (%s)", handle.name, handle.spec)
        return handle

    async def release(self, handle: AgentHandle) -> None:
        self.active.pop(handle.name, None)
        logger.debug("Released agent %s", handle.name)


# ── Notifications ────────────────────────────────────────────────────────────


class LoggingNotificationSink:
    """Logs each message and keeps a record of what was sent."""

    def __init__(self, name: str = "log"):
        self.name = name
        self.sent: list[tuple[str, str]] = []

    async def send(self, target: str, message: str) -> None:
        self.sent.append((target, message))
        logger.info("[%s] → %s: %s", self.name, target, message)


class WebhookNotificationSink:
    """Posts ``{"target": ..., "text": ...}`` to a chat webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ):
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout

    async def send(self, target: str, message: str) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self._url,
                json={"target": target, "text": message},
                headers=self._headers,
            )
            resp.raise_for_status()
        logger.debug("Webhook notification delivered to %s", target)


# ── Artifacts ────────────────────────────────────────────────────────────────


class LocalArtifactStore:
    """Globs files under the workspace; copies them to ``dest_dir`` if set."""

    def __init__(self, dest_dir: Path | None = None):
        self._dest_dir = dest_dir

    async def store(self, pattern: str, metadata: dict[str, Any]) -> dict[str, Any]:
        root = Path(metadata.get("workspace") or Path.cwd())
        return await asyncio.to_thread(self._store_sync, root, pattern, metadata)

    def _store_sync(self, root: Path, pattern: str, metadata: dict[str, Any]) -> dict[str, Any]:
        files: list[dict[str, Any]] = []
        for path in sorted(p for p in root.glob(pattern) if p.is_file()):
            relative = path.relative_to(root)
            data = path.read_bytes()
            files.append(
                {
                    "path": str(relative),
                    "size": len(data),
                    "sha256": hashlib.sha256(data).hexdigest(),
                }
            )
            if self._dest_dir:
                target = self._dest_dir / str(metadata.get("run_id", "unknown")) / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, target)
        return {"pattern": pattern, "files": files, **metadata}


# ── Secrets ──────────────────────────────────────────────────────────────────


class EnvSecretStore:
    """Resolves secret ids from process environment variables."""

    def __init__(self, prefix: str = ""):
        self._prefix = prefix

    async def resolve(self, secret_id: str) -> str:
        key = f"{self._prefix}{secret_id}"
        value = os.environ.get(key)
        if value is None:
            msg = f"Secret not found: {secret_id}"
            raise KeyError(msg)
        return value


class MappingSecretStore:
    def __init__(self, secrets: dict[str, str]):
        self._secrets = dict(secrets)

    async def resolve(self, secret_id: str) -> str:
        try:
            return self._secrets[secret_id]
        except KeyError:
            msg = f"Secret not found: {secret_id}"
            raise KeyError(msg) from None


# ── Approvals ────────────────────────────────────────────────────────────────


@dataclass
class PendingApproval:
    run_id: str
    path: str
    message: str
    future: asyncio.Future = field(repr=False)


class ApprovalBroker:
    """Suspends approval-gate steps until an external decision arrives.

    ``request()`` is awaited by the ``input`` step; any other task (a CLI
    prompt, an HTTP handler, a test) resolves it with ``decide()``. With
    ``auto_approve`` every request is granted immediately.
    """

    def __init__(self, *, auto_approve: bool = False):
        self.auto_approve = auto_approve
        self._pending: dict[tuple[str, str], PendingApproval] = {}

    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    async def request(self, run_id: str, path: str, message: str) -> ApprovalDecision:
        if self.auto_approve:
            logger.info("Auto-approving '%s' (run %s)", path, run_id)
            return ApprovalDecision(approved=True, by="auto")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        key = (run_id, path)
        self._pending[key] = PendingApproval(run_id=run_id, path=path, message=message, future=future)
        logger.info("Waiting for approval of '%s' (run %s): %s", path, run_id, message)
        try:
            return await future
        finally:
            self._pending.pop(key, None)

    def decide(
        self,
        run_id: str,
        path: str,
        *,
        approved: bool,
        by: str = "",
        comment: str = "",
    ) -> bool:
        """Resolve a pending approval. Returns False if nothing was waiting."""
        entry = self._pending.get((run_id, path))
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(ApprovalDecision(approved=approved, by=by, comment=comment))
        logger.info(
            "Approval for '%s' (run %s) %s by %s",
            path,
            run_id,
            "granted" if approved else "rejected",
            by or "unknown",
        )
        return True
