"""
Credential Pool

In-memory registry of Flow credentials, mirrored to one file per credential.

Handles:
- Initial load from the credential directory
- Administrative add / remove
- Selection of a ready credential (round-robin)
- Periodic access-token refresh with a per-credential failure threshold
- Hot reload when credential files are created, modified or deleted

Locking: the pool lock guards only the two maps (credentials and the
filename index). Each credential's fields are guarded by its own lock, and
network calls are never made while holding the pool lock.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine, Optional

from watchfiles import Change

from core.config import PoolConfig, get_config
from services.transport import FlowAPIError, FlowClient

from .credential import Credential, extract_session_token, generate_credential_id, mask_id
from .errors import CredentialNotFound, DuplicateCredential, NoneAvailable, NoSecretFound
from .store import CredentialStore
from .watcher import watch_directory

logger = logging.getLogger(__name__)


class CredentialPool:
    """
    Pool of Flow credentials.

    Usage:
        pool = CredentialPool(client=FlowClient())
        await pool.load()
        pool.start_refresh_worker()
        await pool.start_file_watch()

        credential = await pool.select()
        ...
        await pool.stop()
    """

    def __init__(
        self,
        client: Optional[FlowClient] = None,
        config: Optional[PoolConfig] = None,
        store: Optional[CredentialStore] = None,
    ):
        """
        Initialize the pool.

        Args:
            client: Transport used to exchange session tokens (refresh is skipped without one)
            config: Optional pool config override
            store: Optional store override (defaults to `<data_dir>/at`)
        """
        self.config = config or get_config().pool
        self.client = client
        self.store = store or CredentialStore(self.config.credential_dir, self.config.readme_name)

        self._credentials: dict[str, Credential] = {}
        self._file_index: dict[str, str] = {}  # filename -> credential ID
        self._lock = asyncio.Lock()
        self._cursor = 0

        self._stop_event = asyncio.Event()
        self._refresh_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    async def __aenter__(self) -> "CredentialPool":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    @property
    def threshold(self) -> int:
        return self.config.error_threshold

    # ==================== Registry ====================

    async def load(self) -> int:
        """Load every credential file in the directory. Returns the number newly loaded."""
        loaded = 0

        for path in self.store.iter_files():
            try:
                content = self.store.read(path)
            except OSError as e:
                logger.warning(f"Failed to read credential file {path.name}: {e}")
                continue

            session_token = extract_session_token(content)
            if not session_token:
                logger.warning(f"No valid session token in {path.name}")
                continue

            credential_id = generate_credential_id(session_token)

            async with self._lock:
                previous_id = self._file_index.get(path.name)
                self._file_index[path.name] = credential_id
                if previous_id is not None and previous_id != credential_id:
                    if self._drop_if_unreferenced(previous_id):
                        logger.info(f"Credential file {path.name} changed, dropped {mask_id(previous_id)}")
                if credential_id in self._credentials:
                    continue
                self._credentials[credential_id] = Credential(id=credential_id, session_token=session_token)

            loaded += 1
            logger.info(f"Loaded credential {mask_id(credential_id)} from {path.name}")

        return loaded

    async def add_from_raw_input(self, text: str) -> str:
        """Register a credential from a cookie string or bare session token.

        Raises:
            NoSecretFound: nothing that looks like a session token
            DuplicateCredential: the session token is already registered
        """
        session_token = extract_session_token(text)
        if not session_token:
            raise NoSecretFound()

        credential_id = generate_credential_id(session_token)

        async with self._lock:
            if credential_id in self._credentials:
                raise DuplicateCredential(credential_id)

            credential = Credential(id=credential_id, session_token=session_token)
            self._credentials[credential_id] = credential

            # Indexed before the watcher can see the new file
            try:
                filename = self.store.write(credential_id, text)
                self._file_index[filename] = credential_id
            except OSError as e:
                logger.error(f"Failed to save credential {mask_id(credential_id)} to disk: {e}")

        logger.info(f"Added credential {mask_id(credential_id)}")
        self._spawn(self.refresh_credential(credential))
        return credential_id

    async def remove(self, credential_id: str):
        """Remove a credential and delete its backing file.

        Raises:
            CredentialNotFound: the ID is not registered
        """
        async with self._lock:
            if credential_id not in self._credentials:
                raise CredentialNotFound(credential_id)

            del self._credentials[credential_id]
            filenames = [name for name, cid in self._file_index.items() if cid == credential_id]
            for name in filenames:
                del self._file_index[name]

        if filenames:
            for name in filenames:
                self.store.delete_for(credential_id, name)
        else:
            self.store.delete_for(credential_id)

        logger.info(f"Removed credential {mask_id(credential_id)}")

    def get(self, credential_id: str) -> Optional[Credential]:
        return self._credentials.get(credential_id)

    def credentials(self) -> list[Credential]:
        return list(self._credentials.values())

    def filename_index(self) -> dict[str, str]:
        return dict(self._file_index)

    async def select(self) -> Credential:
        """Pick a ready credential, rotating through the candidates.

        Raises:
            NoneAvailable: every credential is disabled or over the error threshold
        """
        async with self._lock:
            candidates = [c for c in self._credentials.values() if c.is_ready(self.threshold)]
            if not candidates:
                raise NoneAvailable()

            self._cursor = (self._cursor + 1) % len(candidates)
            selected = candidates[self._cursor]

        logger.debug(f"Selected credential {selected.masked_id}")
        return selected

    # ==================== Stats ====================

    def count(self) -> int:
        return len(self._credentials)

    def ready_count(self) -> int:
        return sum(1 for c in self._credentials.values() if c.is_ready(self.threshold))

    def stats(self) -> dict[str, Any]:
        """Snapshot of pool health for the admin surface."""
        ready = disabled = errored = 0
        tokens = []

        for credential in list(self._credentials.values()):
            tokens.append(credential.summary())
            if credential.disabled:
                disabled += 1
            elif credential.error_count >= self.threshold:
                errored += 1
            else:
                ready += 1

        return {
            "total": len(tokens),
            "ready": ready,
            "disabled": disabled,
            "errored": errored,
            "tokens": tokens,
        }

    # ==================== Refresh ====================

    async def refresh_credential(self, credential: Credential) -> bool:
        """Exchange the session token for fresh access material.

        A failure counts against the credential and disables it at the
        threshold; a success clears the count and re-enables it.
        """
        if self.client is None:
            return False

        try:
            access = await self.client.exchange_session_token(credential.session_token)
        except FlowAPIError as e:
            async with credential.lock:
                disabled_now = credential.record_failure(self.threshold)
                error_count = credential.error_count

            if disabled_now:
                logger.warning(f"Credential {credential.masked_id} disabled after {error_count} failed refreshes: {e}")
            else:
                logger.warning(f"Credential {credential.masked_id} refresh failed ({error_count}): {e}")
            return False

        async with credential.lock:
            credential.apply_access(access)

        logger.info(f"Credential {credential.masked_id} refreshed, email: {access.email}")
        return True

    async def ensure_access(self, credential: Credential):
        """Make sure the credential holds an access token valid beyond the margin.

        Unlike refresh_credential, failures propagate to the caller and are not
        counted against the credential.

        Raises:
            FlowAPIError: the exchange failed
        """
        async with credential.lock:
            if not credential.needs_refresh(self.config.expiry_margin):
                return

            if self.client is None:
                raise FlowAPIError("No transport client configured")

            access = await self.client.exchange_session_token(credential.session_token)
            credential.apply_access(access, reset_health=False)

        logger.info(f"Credential {credential.masked_id} access token refreshed, expires {credential.access_expires}")

    async def refresh_all(self) -> int:
        """Refresh every credential whose access token is missing or about to expire.

        Returns the number of successful refreshes.
        """
        async with self._lock:
            snapshot = list(self._credentials.values())

        # Read without the credential locks: a credential busy in a request
        # must not hold up the rest of the pass
        due = [c for c in snapshot if c.needs_refresh(self.config.expiry_margin)]

        if not due or self.client is None:
            return 0

        results = await asyncio.gather(
            *[self.refresh_credential(c) for c in due],
            return_exceptions=True,
        )

        refreshed = 0
        for credential, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected error refreshing {credential.masked_id}: {result}")
            elif result:
                refreshed += 1

        logger.info(f"Refresh pass: {refreshed}/{len(due)} credentials refreshed")
        return refreshed

    def start_refresh_worker(self, interval: Optional[float] = None) -> asyncio.Task:
        """Start the periodic refresh loop (first pass after one interval)."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task

        interval = interval or self.config.refresh_interval
        self._refresh_task = asyncio.create_task(self._refresh_loop(interval))
        logger.info(f"Refresh worker started, interval: {interval}s")
        return self._refresh_task

    async def _refresh_loop(self, interval: float):
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.refresh_all()
            except Exception as e:
                logger.error(f"Refresh worker error: {e}")

        logger.info("Refresh worker stopped")

    # ==================== File watch ====================

    async def start_file_watch(self) -> asyncio.Task:
        """Start reconciling the pool with changes in the credential directory."""
        if self._watch_task is not None and not self._watch_task.done():
            return self._watch_task

        directory = self.store.ensure_dir()
        self._watch_task = asyncio.create_task(
            watch_directory(directory, self._stop_event, self.handle_file_change)
        )
        return self._watch_task

    async def handle_file_change(self, change: Change, path: Path):
        """Apply one filesystem change to the pool."""
        name = Path(path).name
        if self.store.is_ignored(name):
            return

        if change == Change.deleted:
            await self._remove_by_file(name)
            return

        # Let the writer finish before reading
        await asyncio.sleep(self.config.watch_debounce)

        try:
            content = self.store.read(path)
        except FileNotFoundError:
            await self._remove_by_file(name)
            return
        except OSError as e:
            logger.warning(f"Failed to read credential file {name}: {e}")
            return

        session_token = extract_session_token(content)
        if not session_token:
            logger.warning(f"No valid session token in {name}")
            return

        credential_id = generate_credential_id(session_token)
        new_credential = None

        async with self._lock:
            previous_id = self._file_index.get(name)
            if previous_id == credential_id:
                return

            if previous_id is not None:
                del self._file_index[name]
                self._drop_if_unreferenced(previous_id)
                logger.info(f"Credential file {name} changed, dropped {mask_id(previous_id)}")

            self._file_index[name] = credential_id
            if credential_id not in self._credentials:
                new_credential = Credential(id=credential_id, session_token=session_token)
                self._credentials[credential_id] = new_credential

        if new_credential is not None:
            logger.info(f"Auto-loaded credential {new_credential.masked_id} from {name}")
            self._spawn(self.refresh_credential(new_credential))

    async def _remove_by_file(self, name: str):
        async with self._lock:
            credential_id = self._file_index.pop(name, None)
            if credential_id is None:
                return
            removed = self._drop_if_unreferenced(credential_id)

        if removed:
            logger.info(f"Removed credential {mask_id(credential_id)} (file {name} deleted)")

    def _drop_if_unreferenced(self, credential_id: str) -> bool:
        # Caller holds the pool lock
        if credential_id in self._file_index.values():
            return False
        return self._credentials.pop(credential_id, None) is not None

    # ==================== Lifecycle ====================

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background credential task failed: {task.exception()}")

    async def wait_idle(self):
        """Wait for detached refreshes started by add or file watch."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def stop(self):
        """Stop background loops and the file watch.

        Calls already in flight are allowed to finish.
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()

        tasks = [t for t in (self._refresh_task, self._watch_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.wait_idle()

        logger.info("Credential pool stopped")
