from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence
from urllib.parse import quote

from insight_sync.config import get_settings
from insight_sync.services.schema_planner import AttributeRole, AttributeSpec, FieldCreationRequest

RequestFunc = Callable[[str, str, dict[str, str], dict[str, Any] | None, dict[str, Any] | None, int], Any]

_ALREADY_EXISTS_MARKERS = ("already exists", "duplicate_value", "duplicate developer name")


class MetadataServiceError(RuntimeError):
    """Raised when schema administration or access-control calls fail."""


class BearerTokenSource(Protocol):
    def get_token(self) -> str: ...

    def invalidate(self) -> None: ...


@dataclass(frozen=True)
class MetadataServiceConfig:
    base_url: str
    timeout_seconds: int = 30


@dataclass(frozen=True)
class ObjectDefinition:
    full_name: str
    label: str
    plural_label: str
    description: str | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "fullName": self.full_name,
            "label": self.label,
            "pluralLabel": self.plural_label,
        }
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class MetadataResult:
    success: bool
    errors: tuple[str, ...] = ()
    already_exists: bool = False


@dataclass(frozen=True)
class BatchResult:
    success: bool
    errors: tuple[str, ...] = field(default_factory=tuple)


def is_already_exists_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _ALREADY_EXISTS_MARKERS)


class MetadataServiceClient:
    """Thin wrapper around the schema administration and access-control REST API."""

    def __init__(
        self,
        *,
        token_source: BearerTokenSource,
        config: MetadataServiceConfig | None = None,
        request_func: RequestFunc | None = None,
    ) -> None:
        if config is None:
            settings = get_settings()
            config = MetadataServiceConfig(
                base_url=(settings.metadata_api_url or "").strip(),
                timeout_seconds=settings.metadata_api_timeout_seconds,
            )

        base_url = (config.base_url or "").strip()
        if not base_url:
            raise ValueError("Metadata API URL is required to initialize MetadataServiceClient.")

        base = base_url if base_url.startswith("http") else f"https://{base_url}"
        self._base_url = base.rstrip("/")
        self._token_source = token_source
        self._timeout = max(1, config.timeout_seconds)
        self._request_func = request_func

    def create_object(self, definition: ObjectDefinition) -> MetadataResult:
        try:
            self._request("POST", "/objects", json_payload=definition.as_payload(), expected_statuses=(200, 201))
        except MetadataServiceError as exc:
            message = str(exc)
            if is_already_exists_error(message):
                return MetadataResult(success=True, already_exists=True)
            return MetadataResult(success=False, errors=(message,))
        return MetadataResult(success=True)

    def create_fields(
        self,
        numeric_fields: Sequence[FieldCreationRequest],
        text_fields: Sequence[FieldCreationRequest],
    ) -> BatchResult:
        payload = {
            "numericFields": [request.as_payload() for request in numeric_fields],
            "textFields": [request.as_payload() for request in text_fields],
        }
        response = self._request("POST", "/fields/batch", json_payload=payload, expected_statuses=(200, 201, 207))
        if not isinstance(response, Mapping):
            raise MetadataServiceError("Field batch response did not include a result body.")

        raw_errors = response.get("errors") or []
        errors = tuple(str(error) for error in raw_errors if error)
        blocking = tuple(error for error in errors if not is_already_exists_error(error))
        success = bool(response.get("success", not blocking))
        if not success and errors and not blocking:
            success = True
        return BatchResult(success=success, errors=blocking)

    def grant_full_access(self, object_name: str, role_name: str) -> None:
        payload = {
            "objectName": object_name,
            "roleName": role_name,
            "permissions": ["read", "create", "edit", "delete", "viewAll", "modifyAll"],
        }
        self._request("POST", "/access/grants", json_payload=payload, expected_statuses=(200, 201, 204))

    def fetch_insight_schema(self, insight_name: str) -> list[AttributeSpec]:
        path = f"/insights/{quote(insight_name, safe='')}/schema"
        response = self._request("GET", path)
        if not isinstance(response, Mapping):
            raise MetadataServiceError(f"Schema response for {insight_name} was empty.")
        attributes: list[AttributeSpec] = []
        attributes.extend(self._parse_attributes(response.get("measures"), AttributeRole.MEASURE))
        attributes.extend(self._parse_attributes(response.get("dimensions"), AttributeRole.DIMENSION))
        return attributes

    @staticmethod
    def _parse_attributes(entries: Any, role: AttributeRole) -> Iterable[AttributeSpec]:
        if not isinstance(entries, list):
            return []
        parsed: list[AttributeSpec] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            name = entry.get("name") or entry.get("field")
            if not isinstance(name, str) or not name.strip():
                continue
            label = entry.get("label")
            declared_type = entry.get("type") or ("NUMBER" if role is AttributeRole.MEASURE else "STRING")
            parsed.append(
                AttributeSpec(
                    name=name.strip(),
                    display_label=label.strip() if isinstance(label, str) and label.strip() else name.strip(),
                    declared_type=str(declared_type),
                    role=role,
                )
            )
        return parsed

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        expected_statuses: tuple[int, ...] = (200,),
    ) -> Mapping[str, Any] | None:
        url = f"{self._base_url}{path}"
        try:
            headers = {
                "Authorization": f"Bearer {self._token_source.get_token()}",
                "Content-Type": "application/json",
            }
            response = self._dispatch_request(method, url, headers, json_payload, params)
        except MetadataServiceError:
            raise
        except Exception as exc:  # pragma: no cover - defensive networking
            raise MetadataServiceError(f"Metadata request to {path} failed: {exc}") from exc

        if response.status_code == 401:
            self._token_source.invalidate()

        if response.status_code not in expected_statuses:
            detail = self._extract_detail(response)
            raise MetadataServiceError(
                f"Metadata API call {method} {path} failed with {response.status_code}: {detail}"
            )

        if response.status_code == 204:
            return None

        try:
            return response.json()
        except ValueError:  # pragma: no cover - non-json responses
            return None

    def _dispatch_request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        json_payload: Mapping[str, Any] | None,
        params: Mapping[str, Any] | None,
    ):
        if self._request_func is not None:
            return self._request_func(method, url, headers, json_payload and dict(json_payload), params and dict(params), self._timeout)

        import requests

        return requests.request(
            method,
            url,
            headers=headers,
            json=json_payload,
            params=params,
            timeout=self._timeout,
        )

    @staticmethod
    def _extract_detail(response: Any) -> str:
        try:
            payload = response.json()
        except Exception:  # pragma: no cover - fallback to text
            payload = None

        if isinstance(payload, Mapping):
            message = payload.get("message") or payload.get("error") or payload.get("errorCode")
            if message:
                return str(message)
        text = getattr(response, "text", None)
        if text:
            return str(text).strip()
        reason = getattr(response, "reason", None)
        if reason:
            return str(reason)
        return "unknown error"


__all__ = [
    "BatchResult",
    "MetadataResult",
    "MetadataServiceClient",
    "MetadataServiceConfig",
    "MetadataServiceError",
    "ObjectDefinition",
    "is_already_exists_error",
]
