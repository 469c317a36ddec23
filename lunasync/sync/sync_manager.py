"""
Main synchronization manager for GitHub Gist integration.

Orchestrates download, conflict detection, merge, upload and the "last
sync" bookkeeping:

    IDLE -> DOWNLOADING -> CONFLICT_CHECK -> AWAITING_RESOLUTION
         -> APPLYING -> UPLOADING -> IDLE

Only one sync may run per process. Any failure returns the manager to
IDLE; conflicts found by a failed run are discarded, never reused.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from lunasync.config.sync_config import SyncConfig, save_sync_config, validate_sync_config
from lunasync.sync.conflict_detector import detect_conflicts, has_changes_to_upload
from lunasync.sync.exceptions import (
    NotFoundOrForbiddenError,
    SyncError,
    SyncInProgressError,
)
from lunasync.sync.gist_client import GistClient, WriteOutcome
from lunasync.sync.merge_applier import (
    LocalStore,
    apply_downloaded_data,
    ensure_content_loaded,
    merge_for_upload,
)
from lunasync.sync.models import (
    Conflict,
    DownloadResult,
    Resolution,
    SyncData,
    SyncResult,
)
from lunasync.sync.revisions import (
    RevisionChangesResult,
    RevisionDiff,
    RevisionInfo,
    RevisionListResult,
    diff_files,
    parse_revisions,
)
from lunasync.sync.snapshot_codec import build_upload_plan, decode_remote_files


logger = logging.getLogger(__name__)

ConflictResolver = Callable[[list[Conflict]], Optional[list[Resolution]]]
ProgressCallback = Callable[[str], None]

_sync_lock = threading.Lock()
_is_syncing = False


def is_syncing() -> bool:
    """Whether a sync session is running in this process."""
    return _is_syncing


class SyncState(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    CONFLICT_CHECK = "conflict_check"
    AWAITING_RESOLUTION = "awaiting_resolution"
    APPLYING = "applying"
    UPLOADING = "uploading"


class SyncManager:
    """
    Manages synchronization between the local library and a GitHub Gist.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: LocalStore,
        client: Optional[GistClient] = None,
        save_config: Optional[Callable[[SyncConfig], None]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        """
        Initialize sync manager.

        Args:
            config: Sync settings with credentials filled in
            store: Local library
            client: Gist client (created from the config token if None)
            save_config: Persists config after a successful sync
                (default: save_sync_config)
            on_progress: Receives short progress messages
        """
        self.config = config
        self.store = store
        self._client = client
        self._save_config = save_config or save_sync_config
        self._on_progress = on_progress
        self._state = SyncState.IDLE

    @property
    def client(self) -> GistClient:
        """Get or create Gist client."""
        if self._client is None:
            validate_sync_config(self.config)
            self._client = GistClient(self.config.credentials.token)
        return self._client

    @property
    def state(self) -> SyncState:
        return self._state

    def _progress(self, message: str) -> None:
        logger.info(message)
        if self._on_progress:
            self._on_progress(message)

    @contextmanager
    def _session(self) -> Iterator[None]:
        """Hold the process-wide sync guard for the duration of a run."""
        global _is_syncing
        with _sync_lock:
            if _is_syncing:
                raise SyncInProgressError("A sync is already in progress")
            _is_syncing = True
        try:
            yield
        finally:
            self._state = SyncState.IDLE
            with _sync_lock:
                _is_syncing = False

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def upload(self, force: bool = False) -> SyncResult:
        """
        Publish the local library to the Gist.

        When a Gist already exists, its current contents are downloaded and
        folded in first (see merge_for_upload), so entities added on other
        devices since the last sync stay published. The local store is not
        modified; the next sync brings those entities down.

        Args:
            force: Replace the Gist with the local library as is, deleting
                remote entities that are missing locally

        Returns:
            SyncResult with the Gist ID and whether it had to be recreated
        """
        try:
            with self._session():
                validate_sync_config(self.config)
                local = self.store.snapshot()
                data = local
                skip_ids: set[str] = set()

                if self.config.remote_id and not force:
                    self._state = SyncState.DOWNLOADING
                    downloaded = self._download_existing(self.config.remote_id)
                    if downloaded is not None:
                        self._state = SyncState.APPLYING
                        data = merge_for_upload(
                            local,
                            downloaded.data,
                            self.config.last_sync_time,
                            self.store.load_chapter_content,
                            self.config.last_synced_entity_ids,
                        )
                        skip_ids = set(downloaded.failed_ids)

                self._state = SyncState.UPLOADING
                outcome = self._upload(data, skip_ids=skip_ids)
                # Only ids held locally count as synced here
                self._record_success(local, outcome)
                return self._result_for(outcome, "Upload complete")
        except SyncError as e:
            return self._failed(e)

    def pull(self) -> SyncResult:
        """
        Download the Gist and apply it; the remote copy wins every conflict.
        """
        try:
            with self._session():
                validate_sync_config(self.config, require_remote_id=True)
                self._state = SyncState.DOWNLOADING
                downloaded = self._download(self.config.remote_id)
                return self._apply_and_upload(downloaded, [])
        except SyncError as e:
            return self._failed(e)

    def download(self) -> DownloadResult:
        """
        Fetch and decode the remote replica.

        Returns:
            DownloadResult; unreadable entities are listed in ``failures``,
            and ``success`` is False when the Gist itself cannot be read

        Raises:
            MissingRemoteIdError: If no Gist ID is configured
        """
        validate_sync_config(self.config, require_remote_id=True)
        try:
            return self._download(self.config.remote_id)
        except SyncError as e:
            logger.error("Download failed: %s", e)
            return DownloadResult.failed(e)

    def detect_conflicts(self, downloaded: DownloadResult) -> list[Conflict]:
        """Compare the local library with a downloaded replica."""
        return detect_conflicts(self.store.snapshot(), downloaded.data, self.config.last_sync_time)

    def apply_resolutions(
        self,
        downloaded: DownloadResult,
        resolutions: list[Resolution],
    ) -> SyncResult:
        """
        Merge a downloaded replica using the user's resolutions, then upload.

        Args:
            downloaded: Replica returned by download() or an unresolved sync()
            resolutions: One Resolution per conflict the user decided
        """
        if not downloaded.success:
            return SyncResult(success=False, error=downloaded.error or "Download failed")
        try:
            with self._session():
                validate_sync_config(self.config)
                return self._apply_and_upload(downloaded, resolutions)
        except SyncError as e:
            return self._failed(e)

    def sync(self, resolver: Optional[ConflictResolver] = None) -> SyncResult:
        """
        Run a full sync.

        Args:
            resolver: Called with the detected conflicts; returns resolutions,
                or None to cancel. Without a resolver, conflicts are returned
                unresolved in the result together with the downloaded
                replica, and nothing is applied.

        Returns:
            SyncResult
        """
        try:
            with self._session():
                validate_sync_config(self.config)

                if not self.config.remote_id:
                    self._state = SyncState.UPLOADING
                    data = self.store.snapshot()
                    outcome = self._upload(data)
                    self._record_success(data, outcome)
                    return self._result_for(outcome, "Created sync Gist")

                self._state = SyncState.DOWNLOADING
                downloaded = self._download(self.config.remote_id)

                self._state = SyncState.CONFLICT_CHECK
                conflicts = self.detect_conflicts(downloaded)
                resolutions: list[Resolution] = []

                if conflicts:
                    self._state = SyncState.AWAITING_RESOLUTION
                    self._progress(f"{len(conflicts)} conflict(s) need a decision")
                    if resolver is None:
                        return SyncResult(
                            success=False,
                            message=f"{len(conflicts)} conflict(s) need resolution",
                            remote_id=self.config.remote_id,
                            conflicts=conflicts,
                            download=downloaded,
                            failures=downloaded.failures,
                        )
                    chosen = resolver(conflicts)
                    if chosen is None:
                        return SyncResult(success=False, error="Sync cancelled")
                    resolutions = list(chosen)

                return self._apply_and_upload(downloaded, resolutions)
        except SyncError as e:
            return self._failed(e)

    def status(self) -> dict[str, Any]:
        """
        Get synchronization status.

        Returns:
            Dictionary with local and remote status information
        """
        status: dict[str, Any] = {
            "enabled": self.config.enabled,
            "remote_id": self.config.remote_id,
            "remote_url": None,
            "last_sync_time": self.config.last_sync_time,
            "sync_interval": self.config.sync_interval,
            "state": self._state.value,
            "is_syncing": is_syncing(),
            "local_novels": len(self.store.snapshot().novels),
        }

        if self.config.remote_id:
            try:
                gist = self.client.get_gist(self.config.remote_id)
                files = self.client.get_files(gist)
                status["remote_url"] = gist.get("html_url")
                status["remote_updated_at"] = gist.get("updated_at")
                status["remote_files"] = len(files)
                status["remote_size"] = sum(f.size for f in files.values())
            except SyncError as e:
                status["error"] = str(e)

        return status

    def list_revisions(self) -> RevisionListResult:
        """
        List Gist revisions, newest first.

        Raises:
            MissingRemoteIdError: If no Gist ID is configured
        """
        validate_sync_config(self.config, require_remote_id=True)
        try:
            return RevisionListResult(success=True, revisions=self._list_revisions())
        except SyncError as e:
            logger.error("Could not list revisions: %s", e)
            return RevisionListResult(success=False, error=str(e))

    def revision_changes(self, version: str) -> RevisionChangesResult:
        """
        File changes introduced by one revision.

        Returns:
            RevisionChangesResult; ``success`` is False when the revision
            does not exist or the history cannot be read

        Raises:
            MissingRemoteIdError: If no Gist ID is configured
        """
        validate_sync_config(self.config, require_remote_id=True)
        try:
            revisions = self._list_revisions()
            position = next(
                (i for i, revision in enumerate(revisions) if revision.version == version),
                None,
            )
            if position is None:
                raise SyncError(f"Revision {version} not found")

            gist_id = self.config.remote_id
            newer = self.client.get_files(self.client.get_revision(gist_id, version))
            older = None
            if position + 1 < len(revisions):
                previous = revisions[position + 1].version
                older = self.client.get_files(self.client.get_revision(gist_id, previous))
        except SyncError as e:
            logger.error("Could not read revision %s: %s", version, e)
            return RevisionChangesResult(success=False, error=str(e))

        diff = RevisionDiff(revision=revisions[position], files=diff_files(newer, older))
        return RevisionChangesResult(success=True, diff=diff)

    def download_revision(self, version: str) -> DownloadResult:
        """
        Decode the Gist as it was at a given revision.

        Raises:
            MissingRemoteIdError: If no Gist ID is configured
        """
        validate_sync_config(self.config, require_remote_id=True)
        try:
            return self._download_revision(version)
        except SyncError as e:
            logger.error("Could not download revision %s: %s", version, e)
            return DownloadResult.failed(e)

    def restore_revision(self, version: str) -> SyncResult:
        """
        Replace the local library with an older revision and publish it.

        Local entities added since the last sync are kept.
        """
        try:
            with self._session():
                validate_sync_config(self.config, require_remote_id=True)
                self._state = SyncState.DOWNLOADING
                self._progress(f"Downloading revision {version[:7]}...")
                downloaded = self._download_revision(version)
                result = self._apply_and_upload(downloaded, [], force_upload=True)
                if result.success:
                    result.message = f"Restored revision {version[:7]}"
                return result
        except SyncError as e:
            return self._failed(e)

    def delete_remote(self) -> SyncResult:
        """Delete the sync Gist and forget its ID."""
        try:
            with self._session():
                validate_sync_config(self.config, require_remote_id=True)
                self.client.delete_gist(self.config.remote_id)
                logger.info("Deleted Gist %s", self.config.remote_id)
                self.config.remote_id = None
                self.config.last_sync_time = None
                self.config.last_synced_entity_ids = []
                self._save_config(self.config)
                return SyncResult(success=True, message="Gist deleted")
        except SyncError as e:
            return self._failed(e)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _download(self, gist_id: str) -> DownloadResult:
        self._progress("Downloading from Gist...")
        return self._decode(self.client.get_gist(gist_id))

    def _download_existing(self, gist_id: str) -> Optional[DownloadResult]:
        """Download before an upload; None when the Gist is gone and will be recreated."""
        try:
            return self._download(gist_id)
        except NotFoundOrForbiddenError:
            logger.warning("Gist %s is not accessible, uploading local data only", gist_id)
            return None

    def _download_revision(self, version: str) -> DownloadResult:
        return self._decode(self.client.get_revision(self.config.remote_id, version))

    def _list_revisions(self) -> list[RevisionInfo]:
        return parse_revisions(self.client.list_revisions(self.config.remote_id))

    def _decode(self, gist: dict[str, Any]) -> DownloadResult:
        result = decode_remote_files(
            self.client.get_files(gist),
            self.client.read_content,
            self.client.read_metadata,
        )
        result.remote_url = gist.get("html_url")
        if result.failures:
            logger.warning("%d remote item(s) could not be read", len(result.failures))
        return result

    def _apply_and_upload(
        self,
        downloaded: DownloadResult,
        resolutions: list[Resolution],
        force_upload: bool = False,
    ) -> SyncResult:
        self._state = SyncState.APPLYING
        self._progress("Applying remote changes...")

        protected = set(downloaded.failed_ids)
        if downloaded.settings_failed:
            local = self.store.snapshot()
            protected.update(model["id"] for model in local.ai_models if model.get("id"))
            protected.update(cover["id"] for cover in local.cover_history or [] if cover.get("id"))

        final = apply_downloaded_data(
            self.store,
            downloaded.data,
            resolutions,
            self.config.last_sync_time,
            protected,
        )

        self._state = SyncState.UPLOADING
        outcome: Optional[WriteOutcome] = None
        if force_upload or downloaded.failures or has_changes_to_upload(final, downloaded.data):
            outcome = self._upload(final, skip_ids=downloaded.failed_ids)
        else:
            logger.info("Remote is up to date, skipping upload")

        self._record_success(final, outcome)

        result = self._result_for(outcome, "Sync complete")
        result.remote_url = result.remote_url or downloaded.remote_url
        result.failures = list(downloaded.failures)
        if downloaded.failures:
            result.message = (
                f"{result.message}; {len(downloaded.failures)} item(s) could not be read"
            )
        return result

    def _upload(self, data: SyncData, skip_ids: Optional[set[str]] = None) -> WriteOutcome:
        self._progress("Preparing files...")
        loaded = SyncData(
            novels=[ensure_content_loaded(n, self.store.load_chapter_content) for n in data.novels],
            ai_models=data.ai_models,
            app_settings=data.app_settings,
            cover_history=data.cover_history,
        )
        plan = build_upload_plan(loaded, skip_ids=skip_ids or ())

        remote_id = self.config.remote_id
        remote_names: list[str] = []
        if remote_id:
            try:
                remote_names = list(self.client.get_files(self.client.get_gist(remote_id)))
            except NotFoundOrForbiddenError:
                logger.warning("Gist %s is not accessible, a new one will be created", remote_id)

        changes, removed = plan.changes(remote_names)
        if removed:
            logger.info("Removing %d obsolete file(s) from the Gist", len(removed))

        outcome = self.client.write_files(
            remote_id,
            changes,
            on_batch=lambda batch, total: self._progress(f"Uploading batch {batch}/{total}..."),
        )

        self._progress("Verifying upload...")
        self.client.verify_files(
            outcome.remote_id,
            plan.files,
            plan.chunk_counts,
            removed=() if outcome.recreated else removed,
        )
        return outcome

    def _record_success(self, data: SyncData, outcome: Optional[WriteOutcome]) -> None:
        """Update "last sync" bookkeeping; only called once every step succeeded."""
        if outcome is not None:
            if outcome.recreated:
                logger.warning(
                    "Gist %s was recreated as %s", self.config.remote_id, outcome.remote_id
                )
            self.config.remote_id = outcome.remote_id

        self.config.last_sync_time = datetime.now(timezone.utc)
        self.config.last_synced_entity_ids = data.entity_ids()
        self._save_config(self.config)

    def _result_for(self, outcome: Optional[WriteOutcome], message: str) -> SyncResult:
        result = SyncResult(success=True, message=message, remote_id=self.config.remote_id)
        if outcome is not None:
            result.uploaded = True
            result.remote_url = outcome.url
            result.recreated = outcome.recreated
            if outcome.recreated:
                result.message = (
                    f"{message}. The previous Gist was not accessible; "
                    f"data now lives in Gist {outcome.remote_id}"
                )
        return result

    def _failed(self, error: SyncError) -> SyncResult:
        self._state = SyncState.IDLE
        logger.error("Sync failed: %s", error)
        return SyncResult.failed(error)
