from __future__ import annotations

import json
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable, Mapping, Protocol, Sequence
from urllib.parse import quote, urlencode

from PySide6.QtCore import QByteArray, QObject, QUrl
from PySide6.QtNetwork import QNetworkAccessManager, QNetworkReply, QNetworkRequest

from crmforms.app.picker_debug import picker_debug
from crmforms.core.models import Candidate, EntityId, TransportError


RESOURCE_COMPANIES = "companies"
RESOURCE_CONTACTS = "contacts"

_API_PREFIX = "/api/crm"
_DEFAULT_TIMEOUT_MS = 8_000
_MIN_TIMEOUT_MS = 1_000

SuccessCallback = Callable[[Sequence[Candidate]], None]
EntitySuccessCallback = Callable[[Candidate | None], None]
ErrorCallback = Callable[[BaseException], None]
CandidateMapper = Callable[[Mapping[str, Any]], Candidate | None]


class SearchCollaborator(Protocol):
    def search_entities(
        self,
        query: str,
        limit: int,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        ...


class EntityLookup(Protocol):
    def get_entity_by_id(
        self,
        entity_id: EntityId,
        on_success: EntitySuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        ...


@dataclass(frozen=True, slots=True)
class CrmApiConfig:
    base_url: str = ""
    token: str = ""
    resource: str = RESOURCE_COMPANIES
    timeout_ms: int = _DEFAULT_TIMEOUT_MS

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.resource)

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> CrmApiConfig:
        raw = value or {}
        base_url = str(raw.get("base_url", "") or "").strip().rstrip("/")
        token = str(raw.get("token", "") or "").strip()
        resource = str(raw.get("resource", "") or "").strip().strip("/") or RESOURCE_COMPANIES
        timeout_raw = raw.get("timeout_ms", _DEFAULT_TIMEOUT_MS)
        try:
            timeout_ms = int(timeout_raw)
        except Exception:
            timeout_ms = _DEFAULT_TIMEOUT_MS
        timeout_ms = max(_MIN_TIMEOUT_MS, timeout_ms)
        return cls(base_url=base_url, token=token, resource=resource, timeout_ms=timeout_ms)


def build_search_url(config: CrmApiConfig, query: str, limit: int) -> str:
    params = urlencode({"search": str(query or ""), "limit": max(1, int(limit))})
    return f"{config.base_url}{_API_PREFIX}/{config.resource}?{params}"


def build_entity_url(config: CrmApiConfig, entity_id: EntityId) -> str:
    return f"{config.base_url}{_API_PREFIX}/{config.resource}/{quote(str(entity_id), safe='')}"


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def company_candidate(row: Mapping[str, Any]) -> Candidate | None:
    entity_id = row.get("id")
    name = _clean_text(row.get("name"))
    if entity_id is None or not name:
        return None
    secondary = _clean_text(row.get("email")) or _clean_text(row.get("phone"))
    return Candidate(id=entity_id, label=name, secondary_text=secondary or None)


def contact_candidate(row: Mapping[str, Any]) -> Candidate | None:
    entity_id = row.get("id")
    full_name = " ".join(
        part for part in (_clean_text(row.get("firstName")), _clean_text(row.get("lastName"))) if part
    )
    if entity_id is None or not full_name:
        return None
    secondary = _clean_text(row.get("email")) or _clean_text(row.get("phone"))
    return Candidate(id=entity_id, label=full_name, secondary_text=secondary or None)


_DEFAULT_MAPPERS: dict[str, CandidateMapper] = {
    RESOURCE_COMPANIES: company_candidate,
    RESOURCE_CONTACTS: contact_candidate,
}


def parse_candidates(payload: Any, mapper: CandidateMapper) -> tuple[Candidate, ...]:
    if isinstance(payload, Mapping):
        rows = payload.get("content")
    else:
        rows = payload
    if not isinstance(rows, list):
        raise TransportError("Search response did not contain a result list.")
    candidates: list[Candidate] = []
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        candidate = mapper(row)
        if candidate is not None:
            candidates.append(candidate)
    return tuple(candidates)


def parse_entity(payload: Any, mapper: CandidateMapper) -> Candidate | None:
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise TransportError("Entity response was not an object.")
    return mapper(payload)


class CrmDirectory(QObject):
    """Search and entity-by-id lookups against the CRM REST API."""

    def __init__(
        self,
        config: CrmApiConfig,
        *,
        mapper: CandidateMapper | None = None,
        manager: QNetworkAccessManager | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._config = config
        self._mapper = mapper or _DEFAULT_MAPPERS.get(config.resource, company_candidate)
        self._manager = manager or QNetworkAccessManager(self)
        self._replies: set[QNetworkReply] = set()

    @property
    def config(self) -> CrmApiConfig:
        return self._config

    def search_entities(
        self,
        query: str,
        limit: int,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        url = build_search_url(self._config, query, limit)

        def _handle(payload: Any) -> None:
            on_success(parse_candidates(payload, self._mapper))

        self._get_json(url, path=f"{_API_PREFIX}/{self._config.resource}", on_json=_handle, on_error=on_error)

    def get_entity_by_id(
        self,
        entity_id: EntityId,
        on_success: EntitySuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        url = build_entity_url(self._config, entity_id)

        def _handle(payload: Any) -> None:
            on_success(parse_entity(payload, self._mapper))

        self._get_json(
            url,
            path=f"{_API_PREFIX}/{self._config.resource}/{{id}}",
            on_json=_handle,
            on_error=on_error,
            not_found_ok=True,
        )

    def abort_all(self) -> None:
        for reply in tuple(self._replies):
            reply.abort()

    def _get_json(
        self,
        url: str,
        *,
        path: str,
        on_json: Callable[[Any], None],
        on_error: ErrorCallback,
        not_found_ok: bool = False,
    ) -> None:
        if not self._config.configured:
            on_error(TransportError("CRM API base URL is not configured."))
            return

        request = QNetworkRequest(QUrl(url))
        request.setRawHeader(QByteArray(b"Accept"), QByteArray(b"application/json"))
        if self._config.token:
            request.setRawHeader(
                QByteArray(b"Authorization"),
                QByteArray(f"Bearer {self._config.token}".encode("utf-8")),
            )
        request.setTransferTimeout(self._config.timeout_ms)

        picker_debug("crm.request", method="GET", path=path, resource=self._config.resource)
        started_at = perf_counter()
        reply = self._manager.get(request)
        self._replies.add(reply)

        def _finished() -> None:
            self._replies.discard(reply)
            try:
                payload = self._read_reply(reply, path=path, started_at=started_at, not_found_ok=not_found_ok)
            except TransportError as exc:
                on_error(exc)
                return
            finally:
                reply.deleteLater()
            try:
                on_json(payload)
            except TransportError as exc:
                on_error(exc)

        reply.finished.connect(_finished)

    def _read_reply(
        self,
        reply: QNetworkReply,
        *,
        path: str,
        started_at: float,
        not_found_ok: bool,
    ) -> Any:
        status_raw = reply.attribute(QNetworkRequest.Attribute.HttpStatusCodeAttribute)
        try:
            status_code = int(status_raw or 0)
        except Exception:
            status_code = 0
        body = bytes(reply.readAll().data())
        duration_ms = round((perf_counter() - started_at) * 1000.0, 2)

        if not_found_ok and status_code == 404:
            picker_debug("crm.response", method="GET", path=path, status=status_code, duration_ms=duration_ms)
            return None

        if reply.error() != QNetworkReply.NetworkError.NoError:
            detail = reply.errorString() or "network error"
            if status_code:
                detail = f"{status_code}: {detail}"
            picker_debug("crm.request.error", method="GET", path=path, status=status_code, error=detail)
            raise TransportError(f"CRM request failed for {path}: {detail}")

        picker_debug(
            "crm.response",
            method="GET",
            path=path,
            status=status_code,
            body_bytes=len(body),
            duration_ms=duration_ms,
        )
        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except Exception as exc:
            picker_debug("crm.response.parse_error", method="GET", path=path, body_bytes=len(body), error=str(exc))
            raise TransportError(f"CRM API returned non-JSON payload for {path} ({len(body)} bytes).") from exc
