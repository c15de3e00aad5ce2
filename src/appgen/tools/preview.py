"""Client for the preview host that builds and serves generated projects."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from .workspace import ProjectFile

LOGGER = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://minidev.fun"
DEFAULT_DOMAIN_BASE = "minidev.fun"
DEFAULT_PORT = 3000

# (method, url, json body or None, headers) -> (status code, response text)
PreviewTransport = Callable[[str, str, Optional[Dict[str, Any]], Dict[str, str]], Tuple[int, str]]

_LOG_FIELDS = ("stderr", "stdout", "output", "logs", "details")


class PreviewError(RuntimeError):
    """Raised when the preview host cannot be reached or rejects an update."""


class DeploymentFailed(RuntimeError):
    """Raised when a project could not be deployed after all attempts."""

    def __init__(self, message: str, *, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.detail: dict[str, Any] = dict(detail or {})


@dataclass(slots=True)
class PreviewResult:
    """What the preview host reported for one deployment attempt."""

    status: str
    url: str
    port: int = DEFAULT_PORT
    preview_url: str | None = None
    vercel_url: str | None = None
    deployment_error: str | None = None
    deployment_logs: str | None = None
    contract_addresses: dict[str, str] = field(default_factory=dict)
    is_new_deployment: bool | None = None

    @property
    def failed(self) -> bool:
        return self.status == "deployment_failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "url": self.url,
            "port": self.port,
            "previewUrl": self.preview_url,
            "vercelUrl": self.vercel_url,
            "deploymentError": self.deployment_error,
            "deploymentLogs": self.deployment_logs,
            "contractAddresses": dict(self.contract_addresses),
        }


class PreviewService(Protocol):
    def create_preview(
        self,
        project_id: str,
        files: Sequence[ProjectFile],
        token: str,
        *,
        app_type: str = "farcaster",
        is_web3: bool | None = None,
        skip_contracts: bool | None = None,
        job_id: str | None = None,
    ) -> PreviewResult: ...

    def update_preview_files(self, project_id: str, files: Sequence[ProjectFile], token: str) -> None: ...


def default_preview_url(project_id: str, domain_base: str = DEFAULT_DOMAIN_BASE) -> str:
    return f"https://{project_id}.{domain_base}"


class HTTPPreviewService:
    """JSON-over-HTTP preview client posting to ``/deploy`` and ``/previews``."""

    def __init__(
        self,
        api_base: str = DEFAULT_API_BASE,
        *,
        domain_base: str = DEFAULT_DOMAIN_BASE,
        timeout: float = 420.0,
        transport: Optional[PreviewTransport] = None,
        poll_attempts: int = 30,
        poll_interval: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._domain_base = domain_base
        self._timeout = timeout
        self._transport = transport or self._http_transport
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, transport: Optional[PreviewTransport] = None) -> "HTTPPreviewService":
        section = config.get("deployment") or {}
        return cls(
            section.get("preview_api_base") or os.getenv("PREVIEW_API_BASE") or DEFAULT_API_BASE,
            domain_base=section.get("custom_domain_base") or os.getenv("CUSTOM_DOMAIN_BASE") or DEFAULT_DOMAIN_BASE,
            timeout=float(section.get("timeout", 420.0)),
            transport=transport,
        )

    @property
    def domain_base(self) -> str:
        return self._domain_base

    def create_preview(
        self,
        project_id: str,
        files: Sequence[ProjectFile],
        token: str,
        *,
        app_type: str = "farcaster",
        is_web3: bool | None = None,
        skip_contracts: bool | None = None,
        job_id: str | None = None,
    ) -> PreviewResult:
        """Deploy ``files``; build failures come back as ``deployment_failed`` results."""
        if skip_contracts is None:
            skip_contracts = is_web3 is False
        body: Dict[str, Any] = {
            "hash": project_id,
            "files": {item.filename: item.content for item in files},
            "deployToExternal": "vercel",
            "appType": app_type,
            "skipContracts": skip_contracts,
        }
        if is_web3 is not None:
            body["isWeb3"] = is_web3
        if job_id:
            body["jobId"] = job_id

        LOGGER.info("Creating preview for %s with %d files", project_id, len(files))
        status, text = self._transport("POST", f"{self._api_base}/deploy", body, self._headers(token))
        data = _load_object(text)
        fallback_url = default_preview_url(project_id, self._domain_base)

        if not 200 <= status < 300:
            LOGGER.error("Preview host returned HTTP %d for %s", status, project_id)
            logs = next((str(data[key]) for key in _LOG_FIELDS if data.get(key)), "")
            message = str(data.get("deploymentError") or data.get("error") or "Unknown deployment error")
            # generic messages carry no detail; the logs are more useful to the fixer
            if "npx exited" in message or message == "null" or len(message) < 20:
                message = logs or message
            return PreviewResult(
                status="deployment_failed",
                url=fallback_url,
                deployment_error=message,
                deployment_logs=logs,
            )

        if data.get("status") == "in_progress":
            polled = self._poll_status(project_id, token)
            if polled.get("status") == "completed" and polled.get("deploymentUrl"):
                data.update(
                    previewUrl=polled["deploymentUrl"],
                    vercelUrl=polled["deploymentUrl"],
                    status="completed",
                )
            elif polled.get("status") == "failed":
                return PreviewResult(
                    status="deployment_failed",
                    url=fallback_url,
                    deployment_error=str(polled.get("error") or "Deployment failed during polling"),
                    deployment_logs=str(polled.get("logs") or ""),
                )

        addresses = data.get("contractAddresses")
        default_status = "deployed" if data.get("isNewDeployment") else "updated"
        return PreviewResult(
            status=str(data.get("status") or default_status),
            url=str(data.get("previewUrl") or data.get("vercelUrl") or fallback_url),
            port=int(data.get("port") or DEFAULT_PORT),
            preview_url=data.get("previewUrl"),
            vercel_url=data.get("vercelUrl"),
            deployment_error=data.get("error"),
            deployment_logs=data.get("logs") or data.get("output"),
            contract_addresses=dict(addresses) if isinstance(addresses, Mapping) else {},
            is_new_deployment=data.get("isNewDeployment"),
        )

    def update_preview_files(self, project_id: str, files: Sequence[ProjectFile], token: str) -> None:
        body = {
            "id": project_id,
            "files": [{"path": item.filename, "content": item.content} for item in files],
            "wait": False,
        }
        status, text = self._transport("POST", f"{self._api_base}/previews", body, self._headers(token))
        if not 200 <= status < 300:
            raise PreviewError(f"Failed to update preview: {status} {text[:500]}")
        LOGGER.info("Updated %d preview file(s) for %s", len(files), project_id)

    def _poll_status(self, project_id: str, token: str) -> Dict[str, Any]:
        url = f"{self._api_base}/deploy/status/{project_id}"
        for attempt in range(1, self._poll_attempts + 1):
            status, text = self._transport("GET", url, None, self._headers(token))
            if status == 404:
                return {"status": "failed", "error": "Deployment job not found"}
            if not 200 <= status < 300:
                raise PreviewError(f"Status poll failed: {status}")
            data = _load_object(text)
            if data.get("status") in {"completed", "failed"}:
                return data
            LOGGER.debug("Deployment for %s still in progress (poll %d)", project_id, attempt)
            if attempt < self._poll_attempts:
                self._sleep(self._poll_interval)
        return {"status": "failed", "error": f"Deployment polling timeout after {self._poll_attempts} attempts"}

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _http_transport(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Tuple[int, str]:
        import urllib.error
        import urllib.request

        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return getattr(response, "status", 200), response.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            return error.code, error.read().decode("utf-8", errors="ignore")
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise PreviewError(f"Request timeout after {self._timeout:.0f}s") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise PreviewError(f"Failed to reach preview host: {error.reason}") from error


def _load_object(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text) if text else {}
    except json.JSONDecodeError:
        return {"error": f"Failed to parse response: {text[:200]}"}
    return data if isinstance(data, dict) else {}


__all__ = [
    "DeploymentFailed",
    "HTTPPreviewService",
    "PreviewError",
    "PreviewResult",
    "PreviewService",
    "PreviewTransport",
    "default_preview_url",
]
