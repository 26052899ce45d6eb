"""Extension registry client.

This module defines the registry operations the pipeline relies on and an
httpx implementation for the Extensions 2.0 REST API.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from extforge.__version__ import __version__
from extforge.core.logging_manager import get_logger
from extforge.utils.exceptions import RegistryError

logger = get_logger(__name__)

API_PREFIX = '/api/v2/extensions'


@dataclass
class RemoteVersion:
    """One version of an extension known to the registry.

    Attributes:
        version: Version string as reported by the registry
        data: The full descriptor
    """

    version: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RemoteVersion:
        return cls(version=str(data['version']), data=dict(data))


class RegistryClient(abc.ABC):
    """Operations the pipeline needs from an extension registry.

    Every method raises :class:`RegistryError` on failure.
    """

    @abc.abstractmethod
    def list_versions(self, name: str) -> List[RemoteVersion]:
        """Versions of ``name`` in registry order."""

    @abc.abstractmethod
    def delete_version(self, name: str, version: str) -> None:
        """Remove one version of ``name``."""

    @abc.abstractmethod
    def upload(self, data: bytes, dry_run: bool = False) -> Dict[str, Any]:
        """Upload an outer archive, or only validate it when ``dry_run``."""

    @abc.abstractmethod
    def activate(self, name: str, version: str) -> None:
        """Make ``version`` the active version of ``name`` in the environment."""

    def close(self) -> None:
        pass


class HttpRegistryClient(RegistryClient):
    """Registry client over HTTP.

    Attributes:
        url: Base URL of the environment
        timeout: Request timeout in seconds
    """

    def __init__(
            self,
            url: str,
            token: str,
            timeout: float = 30.0,
            verify_ssl: bool = True,
            transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            url: Base URL of the environment
            token: API token with extension read/write scopes
            timeout: Request timeout in seconds
            verify_ssl: Verify the server certificate
            transport: Custom httpx transport
        """
        self.url = url.rstrip('/')
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.url,
            timeout=timeout,
            verify=verify_ssl,
            transport=transport,
            headers=self._get_headers(token),
        )

    def __enter__(self) -> HttpRegistryClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def list_versions(self, name: str) -> List[RemoteVersion]:
        path = f"{API_PREFIX}/{self._quote(name)}"
        versions: List[RemoteVersion] = []
        params: Dict[str, Any] = {}
        while True:
            payload = self._json_or_empty(self._request('GET', path, params=params))
            for item in payload.get('extensions', []):
                try:
                    versions.append(RemoteVersion.from_dict(item))
                except KeyError:
                    logger.warning("Skipping registry entry without version", name=name, entry=item)
            next_page = payload.get('nextPageKey')
            if not next_page:
                return versions
            # the page key carries the original query
            params = {'nextPageKey': next_page}

    def delete_version(self, name: str, version: str) -> None:
        self._request('DELETE', f"{API_PREFIX}/{self._quote(name)}/{self._quote(version)}")

    def upload(self, data: bytes, dry_run: bool = False) -> Dict[str, Any]:
        response = self._request(
            'POST',
            API_PREFIX,
            params={'validateOnly': 'true' if dry_run else 'false'},
            files={'file': ('extension.zip', data, 'application/zip')},
        )
        return self._json_or_empty(response)

    def activate(self, name: str, version: str) -> None:
        self._request(
            'PUT',
            f"{API_PREFIX}/{self._quote(name)}/environmentConfiguration",
            json={'version': version},
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request and turn failures into RegistryError.

        Raises:
            RegistryError: If the registry is unreachable or returns an error status
        """
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise RegistryError(f"Failed to connect to registry: {e}", url=self.url) from e

        if response.is_error:
            data = self._json_or_empty(response)
            error = data.get('error', {}) if isinstance(data, dict) else {}
            message = error.get('message') if isinstance(error, dict) else None
            raise RegistryError(
                message or f"Registry returned error: {response.status_code} - {response.text}",
                status_code=response.status_code,
                data=data or response.text,
            )
        return response

    @staticmethod
    def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {'result': data}

    @staticmethod
    def _quote(value: str) -> str:
        return quote(value, safe=':')

    @staticmethod
    def _get_headers(token: str) -> Dict[str, str]:
        """Get HTTP headers for registry requests.

        Returns:
            Dictionary of HTTP headers
        """
        headers = {
            'User-Agent': f"extforge/{__version__}",
            'Accept': 'application/json',
        }
        if token:
            headers['Authorization'] = f"Api-Token {token}"
        return headers
