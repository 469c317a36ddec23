"""
GitHub Gist API client for library synchronization.

Uses GitHub REST API v3 for Gist operations.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Union

import requests

from lunasync.sync.chunk_codec import utf8_size
from lunasync.sync.exceptions import (
    AuthError,
    BatchUpdateError,
    ConfigError,
    GistApiError,
    NotFoundOrForbiddenError,
    TruncatedContentError,
    VerificationError,
    WriteConflictError,
)
from lunasync.sync.file_naming import name_for_chunk, name_for_metadata
from lunasync.sync.models import ChunkMetadata, RemoteFile


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Upsert:
    """Create or overwrite a file with the given content."""

    content: str


@dataclass(frozen=True)
class Delete:
    """Remove a file from the Gist."""


DELETE = Delete()

FileChange = Union[Upsert, Delete]

BatchCallback = Callable[[int, int], None]


@dataclass
class WriteOutcome:
    """Where the files ended up after write_files()."""

    remote_id: str
    url: Optional[str] = None
    recreated: bool = False


def encode_changes(changes: dict[str, FileChange]) -> dict[str, Optional[dict[str, str]]]:
    """Translate file changes to the API payload (null deletes a file)."""
    payload: dict[str, Optional[dict[str, str]]] = {}
    for filename, change in changes.items():
        if isinstance(change, Delete):
            payload[filename] = None
        else:
            payload[filename] = {"content": change.content}
    return payload


class GistClient:
    """
    GitHub Gist API client.

    Handles authentication, batched writes, truncated-content fallback,
    post-write verification, and error classification.
    """

    API_BASE = "https://api.github.com"
    DESCRIPTION = "Luna AI Translator - Settings and Novels"
    MAX_RETRIES = 3
    RETRY_DELAY = 1  # seconds, doubled per attempt
    TIMEOUT = 30  # seconds per request
    BATCH_SIZE = 10
    SIZE_TOLERANCE = 0.05
    RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize Gist client.

        Args:
            token: GitHub Personal Access Token with 'gist' scope
            session: HTTP session to use (a new requests.Session by default)
            timeout: Per-request timeout in seconds

        Raises:
            ConfigError: If token is empty
        """
        if not token or not token.strip():
            raise ConfigError("GitHub token is required")

        self.token = token.strip()
        self.timeout = timeout or self.TIMEOUT
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({
            "Authorization": f"token {self.token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "lunasync",
        })

    # ------------------------------------------------------------------
    # Raw API operations
    # ------------------------------------------------------------------

    def create_gist(
        self,
        files: dict[str, str],
        description: Optional[str] = None,
        public: bool = False,
    ) -> dict[str, Any]:
        """
        Create a new Gist.

        Args:
            files: Dictionary of {filename: content}
            description: Gist description
            public: If True, create public Gist (default: private)

        Returns:
            Gist data including ID and URL
        """
        payload = {
            "description": description or self.DESCRIPTION,
            "public": public,
            "files": {
                filename: {"content": content}
                for filename, content in files.items()
            },
        }

        response = self._request("POST", f"{self.API_BASE}/gists", json=payload)
        return response.json()

    def get_gist(self, gist_id: str) -> dict[str, Any]:
        """
        Get Gist by ID.

        Raises:
            NotFoundOrForbiddenError: If Gist does not exist or is inaccessible
        """
        response = self._request("GET", f"{self.API_BASE}/gists/{gist_id}")
        return response.json()

    def update_gist(
        self,
        gist_id: str,
        changes: dict[str, FileChange],
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Apply one set of file changes in a single request.

        Args:
            gist_id: Gist ID
            changes: Dictionary of {filename: Upsert | DELETE}
            description: New description (optional)

        Returns:
            Updated Gist data
        """
        payload: dict[str, Any] = {"files": encode_changes(changes)}
        if description is not None:
            payload["description"] = description

        response = self._request(
            "PATCH",
            f"{self.API_BASE}/gists/{gist_id}",
            json=payload
        )
        return response.json()

    def delete_gist(self, gist_id: str) -> None:
        self._request("DELETE", f"{self.API_BASE}/gists/{gist_id}")

    def list_revisions(self, gist_id: str, per_page: int = 100) -> list[dict[str, Any]]:
        """
        List Gist revisions, newest first.

        Each item carries ``version``, ``committed_at`` and ``change_status``.
        """
        revisions: list[dict[str, Any]] = []
        page = 1
        while True:
            response = self._request(
                "GET",
                f"{self.API_BASE}/gists/{gist_id}/commits",
                params={"per_page": per_page, "page": page},
            )
            batch = response.json()
            revisions.extend(batch)
            if len(batch) < per_page:
                return revisions
            page += 1

    def get_revision(self, gist_id: str, version: str) -> dict[str, Any]:
        """Get the Gist as it was at a given revision SHA."""
        response = self._request("GET", f"{self.API_BASE}/gists/{gist_id}/{version}")
        return response.json()

    def fetch_raw(self, raw_url: str) -> str:
        response = self._request("GET", raw_url)
        return response.text

    def get_authenticated_user(self) -> dict[str, Any]:
        response = self._request("GET", f"{self.API_BASE}/user")
        return response.json()

    def test_token(self) -> bool:
        """
        Test if token is valid.

        Returns:
            True if token is valid
        """
        try:
            self.get_authenticated_user()
            return True
        except AuthError:
            return False

    def get_rate_limit(self) -> dict[str, Any]:
        response = self._request("GET", f"{self.API_BASE}/rate_limit")
        return response.json()

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @staticmethod
    def get_files(gist: dict[str, Any]) -> dict[str, RemoteFile]:
        """Index the files of a Gist response by name."""
        return {
            name: RemoteFile.from_api(name, data)
            for name, data in (gist.get("files") or {}).items()
            if data is not None
        }

    def read_content(self, remote_file: RemoteFile) -> str:
        """
        Get the full content of a file.

        Files the API truncated (or returned without content) are fetched
        from their raw URL.

        Raises:
            TruncatedContentError: If the full content cannot be retrieved
        """
        if not remote_file.needs_raw_fetch:
            return remote_file.content or ""

        if not remote_file.raw_url:
            raise TruncatedContentError(
                f"'{remote_file.name}' is truncated and has no raw URL"
            )

        logger.debug("Fetching truncated file %s from raw URL", remote_file.name)
        try:
            return self.fetch_raw(remote_file.raw_url)
        except GistApiError as e:
            raise TruncatedContentError(
                f"Could not fetch full content of '{remote_file.name}': {e}"
            ) from e

    # ------------------------------------------------------------------
    # Batched writes
    # ------------------------------------------------------------------

    def update_files(
        self,
        gist_id: str,
        changes: dict[str, FileChange],
        batch_size: Optional[int] = None,
        on_batch: Optional[BatchCallback] = None,
    ) -> dict[str, Any]:
        """
        Apply file changes in sequential batches.

        A failure on the first batch is re-raised unchanged (nothing was
        applied). A failure on a later batch aborts the remaining batches
        and raises BatchUpdateError, or WriteConflictError for 409.

        Args:
            gist_id: Gist ID
            changes: Dictionary of {filename: Upsert | DELETE}
            batch_size: Files per request (default: BATCH_SIZE)
            on_batch: Called with (batch number, total batches) before each request

        Returns:
            Gist data from the last request
        """
        if not changes:
            return self.get_gist(gist_id)

        batches = self._split(changes, batch_size or self.BATCH_SIZE)
        return self._apply_batches(gist_id, batches, already_applied=0, on_batch=on_batch)

    def write_files(
        self,
        remote_id: Optional[str],
        changes: dict[str, FileChange],
        description: Optional[str] = None,
        on_batch: Optional[BatchCallback] = None,
    ) -> WriteOutcome:
        """
        Write files to the existing Gist, or create one.

        When the configured Gist is gone or inaccessible a new one is
        created and the outcome is flagged as recreated, so the caller can
        persist the new ID.

        Args:
            remote_id: Configured Gist ID (None creates a new Gist)
            changes: Dictionary of {filename: Upsert | DELETE}
            description: Description used if a Gist is created
            on_batch: Called with (batch number, total batches) before each request
        """
        if remote_id:
            try:
                gist = self.update_files(remote_id, changes, on_batch=on_batch)
                return WriteOutcome(remote_id=gist.get("id", remote_id), url=gist.get("html_url"))
            except NotFoundOrForbiddenError as e:
                logger.warning(
                    "Gist %s is not accessible (%s), creating a new one", remote_id, e
                )
                outcome = self._create_with_files(changes, description, on_batch)
                outcome.recreated = True
                return outcome

        return self._create_with_files(changes, description, on_batch)

    def _create_with_files(
        self,
        changes: dict[str, FileChange],
        description: Optional[str],
        on_batch: Optional[BatchCallback] = None,
    ) -> WriteOutcome:
        upserts = {
            name: change.content
            for name, change in changes.items()
            if isinstance(change, Upsert)
        }
        if not upserts:
            raise GistApiError("Cannot create a Gist without any files")

        batches = self._split(upserts, self.BATCH_SIZE)
        first = {name: change.content for name, change in batches[0].items()}
        if on_batch:
            on_batch(1, len(batches))
        gist = self.create_gist(first, description=description)
        gist_id = gist["id"]
        logger.info("Created Gist %s", gist_id)

        if len(batches) > 1:
            self._apply_batches(gist_id, batches[1:], already_applied=1, on_batch=on_batch)

        return WriteOutcome(remote_id=gist_id, url=gist.get("html_url"))

    @staticmethod
    def _split(
        changes: Union[dict[str, FileChange], dict[str, str]],
        batch_size: int,
    ) -> list[dict[str, FileChange]]:
        items = [
            (name, Upsert(change) if isinstance(change, str) else change)
            for name, change in changes.items()
        ]
        return [
            dict(items[start:start + batch_size])
            for start in range(0, len(items), batch_size)
        ]

    def _apply_batches(
        self,
        gist_id: str,
        batches: list[dict[str, FileChange]],
        already_applied: int,
        on_batch: Optional[BatchCallback] = None,
    ) -> dict[str, Any]:
        total = len(batches) + already_applied
        gist: dict[str, Any] = {}

        for offset, batch in enumerate(batches):
            index = offset + already_applied
            logger.debug("Updating Gist %s: batch %d/%d (%d files)",
                         gist_id, index + 1, total, len(batch))
            if on_batch:
                on_batch(index + 1, total)
            try:
                gist = self.update_gist(gist_id, batch)
            except GistApiError as e:
                if index == 0:
                    raise
                message = (
                    f"Batch {index + 1}/{total} failed after {index} batch(es) "
                    f"were applied; the Gist is partially updated: {e}"
                )
                if isinstance(e, WriteConflictError):
                    raise WriteConflictError(message, e.status_code) from e
                raise BatchUpdateError(message, index, total, e.status_code) from e

        return gist

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_files(
        self,
        gist_id: str,
        expected: dict[str, str],
        chunk_counts: Optional[dict[str, int]] = None,
        removed: Iterable[str] = (),
    ) -> None:
        """
        Re-read the Gist and check that the upload landed intact.

        Args:
            gist_id: Gist ID
            expected: {filename: content} that should now exist
            chunk_counts: {novel_id: chunk count} for chunked novels
            removed: Filenames that should no longer exist

        Raises:
            VerificationError: Listing every problem found
        """
        files = self.get_files(self.get_gist(gist_id))
        problems: list[str] = []

        for filename, content in expected.items():
            remote_file = files.get(filename)
            if remote_file is None:
                problems.append(f"Missing file: {filename}")
                continue

            expected_size = utf8_size(content)
            if expected_size == 0:
                continue
            difference = abs(remote_file.size - expected_size) / expected_size
            if difference > self.SIZE_TOLERANCE:
                problems.append(
                    f"Size mismatch for {filename}: expected {expected_size:,} bytes, "
                    f"got {remote_file.size:,} ({difference:.1%} off)"
                )

        for novel_id, count in (chunk_counts or {}).items():
            for index in range(count):
                chunk_name = name_for_chunk(novel_id, index)
                if chunk_name not in files:
                    problems.append(f"Missing chunk {index} of novel {novel_id}: {chunk_name}")

            metadata_name = name_for_metadata(novel_id)
            metadata_file = files.get(metadata_name)
            if metadata_file is None:
                problems.append(f"Missing metadata file: {metadata_name}")
                continue
            try:
                metadata = self.read_metadata(metadata_file)
            except (ValueError, TruncatedContentError) as e:
                problems.append(f"Unreadable metadata file {metadata_name}: {e}")
                continue
            if metadata.chunks != count:
                problems.append(
                    f"Metadata for novel {novel_id} declares {metadata.chunks} chunks, "
                    f"expected {count}"
                )

        for filename in removed:
            if filename in files:
                problems.append(f"File was not deleted: {filename}")

        if problems:
            raise VerificationError(problems)

        logger.debug("Verified %d files in Gist %s", len(expected), gist_id)

    def read_metadata(self, metadata_file: RemoteFile) -> ChunkMetadata:
        """
        Parse a chunk metadata file.

        Raises:
            ValueError: If content is not a metadata object
            TruncatedContentError: If content cannot be fetched
        """
        data = json.loads(self.read_content(metadata_file))
        if not isinstance(data, dict):
            raise ValueError("Metadata is not a JSON object")
        return ChunkMetadata.from_dict(data)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any
    ) -> requests.Response:
        """
        Make HTTP request with retry logic.

        Network failures and 408/429/5xx responses are retried with
        exponential backoff. Other error statuses are raised immediately.

        Raises:
            GistApiError: Or one of its subclasses, by status code
        """
        for attempt in range(self.MAX_RETRIES):
            last_attempt = attempt == self.MAX_RETRIES - 1
            delay = self.RETRY_DELAY * (2 ** attempt)

            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                if last_attempt:
                    raise GistApiError(f"GitHub API request failed: {e}") from e
                logger.warning("%s %s failed (%s), retrying in %ss", method, url, e, delay)
                time.sleep(delay)
                continue

            retryable = (
                response.status_code in self.RETRYABLE_STATUSES or self._is_rate_limited(response)
            )
            if retryable and not last_attempt:
                delay = self._retry_after(response, delay)
                logger.warning(
                    "%s %s returned %d, retrying in %ss",
                    method, url, response.status_code, delay,
                )
                time.sleep(delay)
                continue

            if response.status_code >= 400:
                raise self._classify_error(response)

            return response

        raise GistApiError("Unexpected error in _request")

    @staticmethod
    def _retry_after(response: requests.Response, default: float) -> float:
        try:
            return float(response.headers.get("Retry-After", default))
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = {}

        detail = body.get("message") if isinstance(body, dict) else None
        detail = detail or response.reason or "request failed"
        if isinstance(body, dict) and body.get("errors"):
            detail = f"{detail}: {json.dumps(body['errors'], ensure_ascii=False)}"
        return detail

    @classmethod
    def _is_rate_limited(cls, response: requests.Response) -> bool:
        """GitHub reports exhausted rate limits as 403 (or 429), not as a missing Gist."""
        if response.status_code not in (403, 429):
            return False
        if response.headers.get("X-RateLimit-Remaining") == "0":
            return True
        return "rate limit" in cls._error_detail(response).lower()

    @classmethod
    def _classify_error(cls, response: requests.Response) -> GistApiError:
        status = response.status_code
        detail = cls._error_detail(response)

        if cls._is_rate_limited(response):
            return GistApiError(f"GitHub API rate limit exceeded ({detail})", status)
        if status == 401:
            return AuthError(f"GitHub rejected the token ({detail})", status)
        if status in (403, 404):
            return NotFoundOrForbiddenError(f"Gist not found or not accessible ({detail})", status)
        if status == 409:
            return WriteConflictError(
                "The Gist was modified since it was last read; sync again to pick up "
                f"the remote changes ({detail})",
                status,
            )
        return GistApiError(f"GitHub API error {status}: {detail}", status)
