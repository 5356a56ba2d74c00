"""Remote note store client.

Talks to the hosted notes REST API via the requests library.
"""

from typing import Any, Optional, Protocol, runtime_checkable

import requests
from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from notesync.errors import ConnectivityError, RemoteOperationError
from notesync.models.inputs import CreateNoteInput, NotesFilter, UpdateNoteInput
from notesync.models.note import Note, NoteSyncStatus, SearchHit, utcnow


@runtime_checkable
class NoteRepository(Protocol):
    """Remote CRUD and search over notes.

    Failures are raised, never returned as empty results:
    ConnectivityError when the store is unreachable, RemoteOperationError
    when it rejects the request.
    """

    def get_all(self, filters: Optional[NotesFilter] = None) -> list[Note]: ...

    def create(self, data: CreateNoteInput) -> Note: ...

    def update(self, data: UpdateNoteInput) -> Note: ...

    def delete(self, note_id: str) -> None: ...

    def search(self, query: str) -> list[SearchHit]: ...

    def check_connection(self) -> bool: ...


class HttpNoteRepository:
    """NoteRepository backed by the notes REST API.

    Transport failures are retried with exponential backoff before a
    ConnectivityError is raised.

    Args:
        base_url (str): API base URL, e.g. "http://localhost:3000/api"
        token (str): Bearer token, empty for unauthenticated APIs
        timeout (float): Per-request timeout in seconds
        max_attempts (int): Attempts per request on transport failures
        backoff (float): Multiplier for the exponential wait between attempts

    Attributes:
        base_url (str): API base URL without trailing slash
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff

    def _get_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _handle_response(self, response: requests.Response) -> Any:
        """Parse a response, raising RemoteOperationError on failure.

        Raises:
            RemoteOperationError: If the API returns an error status or a body
                that is not JSON
        """
        if response.status_code >= 400:
            try:
                error_data = response.json()
                error = error_data.get("error", error_data)
                if isinstance(error, str):
                    error = {"message": error}
                raise RemoteOperationError(
                    message=error.get("message", "Unknown error"),
                    status_code=response.status_code,
                    code=str(error.get("code", "")),
                )
            except (ValueError, AttributeError):
                raise RemoteOperationError(
                    message=response.text or "Unknown error",
                    status_code=response.status_code,
                )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteOperationError(
                message=f"Malformed response body: {e}",
                status_code=response.status_code,
            ) from e

    def _send(self, method: str, endpoint: str, **kwargs: Any) -> requests.Response:
        try:
            return requests.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=self._get_headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.exceptions.ConnectionError as e:
            raise ConnectivityError(f"Cannot reach notes API at {self.base_url}") from e
        except requests.exceptions.Timeout as e:
            raise ConnectivityError("Notes API request timed out") from e
        except requests.exceptions.RequestException as e:
            raise ConnectivityError(f"Notes API request failed: {e}") from e

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> requests.Response:
        """Send a request, retrying transport failures."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, min=0, max=10),
            retry=retry_if_exception_type(ConnectivityError),
            before_sleep=lambda state: logger.debug(
                f"{method} {endpoint} failed (attempt {state.attempt_number}), retrying"
            ),
            reraise=True,
        )
        return retrying(self._send, method, endpoint, **kwargs)

    @staticmethod
    def _unwrap(data: Any, key: str) -> Any:
        """Accept both bare payloads and {"data": ...} / {key: ...} envelopes."""
        if isinstance(data, dict):
            if "data" in data:
                return data["data"]
            if key in data:
                return data[key]
        return data

    @staticmethod
    def _items(data: Any, key: str) -> list[Any]:
        items = HttpNoteRepository._unwrap(data, key) or []
        if not isinstance(items, list):
            raise RemoteOperationError(f"Malformed {key} payload: expected a list")
        return items

    def _to_note(self, data: Any) -> Note:
        if not isinstance(data, dict):
            raise RemoteOperationError(f"Malformed note payload: {data!r}")
        try:
            note = Note.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RemoteOperationError(f"Malformed note payload: {e!r}") from e
        note.sync_status = NoteSyncStatus.SYNCED
        note.last_sync_at = utcnow()
        return note

    def get_all(self, filters: Optional[NotesFilter] = None) -> list[Note]:
        params = filters.to_params() if filters else None
        data = self._handle_response(self._request("GET", "/notes", params=params))
        return [self._to_note(item) for item in self._items(data, "notes")]

    def create(self, data: CreateNoteInput) -> Note:
        response = self._request("POST", "/notes", json=data.to_payload())
        return self._to_note(self._unwrap(self._handle_response(response), "note"))

    def update(self, data: UpdateNoteInput) -> Note:
        payload = data.to_payload()
        payload.pop("id", None)
        response = self._request("PATCH", f"/notes/{data.id}", json=payload)
        return self._to_note(self._unwrap(self._handle_response(response), "note"))

    def delete(self, note_id: str) -> None:
        response = self._request("DELETE", f"/notes/{note_id}")
        if response.status_code == 404:
            logger.debug(f"Note {note_id} already absent remotely")
            return
        self._handle_response(response)

    def search(self, query: str) -> list[SearchHit]:
        response = self._request("GET", "/notes/search", params={"q": query})
        hits = []
        for item in self._items(self._handle_response(response), "results"):
            try:
                hits.append(SearchHit.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise RemoteOperationError(f"Malformed search result: {e!r}") from e
        return hits

    def check_connection(self) -> bool:
        """Check if the notes API is reachable.

        Returns:
            True if reachable, False otherwise
        """
        try:
            response = self._send("GET", "/health")
        except ConnectivityError:
            return False
        return response.status_code < 500
