"""Thin HTTP client around the Microsoft Graph endpoints used by the notifier."""

from __future__ import annotations

import time
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests

from .config import DirectoryConfig
from .expiry import DirectoryUser

USER_FIELDS = (
    "id",
    "displayName",
    "userPrincipalName",
    "accountEnabled",
    "passwordPolicies",
    "lastPasswordChangeDateTime",
    "createdDateTime",
    "onPremisesSyncEnabled",
)


class DirectoryError(RuntimeError):
    """Raised when the directory could not be queried."""


class DirectoryAuthError(DirectoryError):
    """Raised when an access token could not be obtained."""


def _json_object(response: requests.Response) -> Dict[str, Any]:
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


class GraphDirectoryClient:
    """Read-only wrapper for the Graph user, group and manager endpoints."""

    def __init__(self, config: DirectoryConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session or requests.Session()
        self._graph_url = config.graph_url.rstrip("/")
        self._token: Optional[str] = None
        self._token_expiry_epoch: float = 0.0

    # ---- authentication helpers -------------------------------------------------
    def _token_is_valid(self) -> bool:
        return bool(self._token) and time.time() < (self._token_expiry_epoch - 60)

    def _obtain_token(self) -> None:
        if not self._config.is_configured:
            raise DirectoryAuthError("Missing directory credentials (tenant id, client id, client secret)")

        endpoint = f"{self._config.authority_url.rstrip('/')}/{self._config.tenant_id}/oauth2/v2.0/token"
        data = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "scope": "https://graph.microsoft.com/.default",
            "grant_type": "client_credentials",
        }
        try:
            response = self._session.post(endpoint, data=data, timeout=self._config.timeout_seconds)
        except requests.RequestException as exc:
            raise DirectoryAuthError(f"Directory authentication failed: {exc}") from exc
        if response.status_code != 200:
            detail = response.text
            try:
                detail = response.json().get("error_description") or detail
            except ValueError:
                pass
            raise DirectoryAuthError(f"Directory authentication failed: {detail}")
        try:
            payload = _json_object(response)
            self._token = str(payload["access_token"])
            expires_in = int(payload.get("expires_in", 3600))
        except (KeyError, ValueError) as exc:
            raise DirectoryAuthError(f"Directory authentication returned an unusable token response: {exc}") from exc
        self._token_expiry_epoch = time.time() + expires_in

    def _auth_headers(self) -> Dict[str, str]:
        if not self._token_is_valid():
            self._obtain_token()
        assert self._token  # for type-checkers
        return {"Authorization": f"Bearer {self._token}", "ConsistencyLevel": "eventual"}

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        try:
            return self._session.get(
                url,
                headers=self._auth_headers(),
                params=params,
                timeout=self._config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise DirectoryError(f"Directory request to {url} failed: {exc}") from exc

    def _paged(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        url: Optional[str] = f"{self._graph_url}/{path.lstrip('/')}"
        while url:
            response = self._get(url, params=params)
            if response.status_code >= 400:
                raise DirectoryError(f"Directory request to {url} failed with HTTP {response.status_code}")
            try:
                payload = _json_object(response)
            except ValueError as exc:
                raise DirectoryError(f"Directory request to {url} returned malformed JSON: {exc}") from exc
            yield from payload.get("value", [])
            url = payload.get("@odata.nextLink")
            params = None  # nextLink already carries the query

    # ---- public API --------------------------------------------------------------
    def verify(self) -> None:
        """Fetch a token, raising :class:`DirectoryAuthError` on failure."""

        self._token = None
        self._auth_headers()

    def list_users(self) -> List[DirectoryUser]:
        params = {"$select": ",".join(USER_FIELDS), "$top": 999}
        return [DirectoryUser.from_api(payload) for payload in self._paged("users", params)]

    def find_group_id(self, group_name: str) -> str:
        escaped = group_name.replace("'", "''")
        params = {"$filter": f"displayName eq '{escaped}'", "$select": "id,displayName"}
        groups = list(self._paged("groups", params))
        if not groups:
            raise DirectoryError(f"Group {group_name!r} not found")
        group_id = groups[0].get("id") if isinstance(groups[0], dict) else None
        if not group_id:
            raise DirectoryError(f"Group {group_name!r} has no id in the directory response")
        return str(group_id)

    def list_group_members(self, group_name: str) -> List[DirectoryUser]:
        """Return every user that is a direct or nested member of ``group_name``."""

        group_id = self.find_group_id(group_name)
        params = {"$select": ",".join(USER_FIELDS), "$top": 999}
        path = f"groups/{quote(group_id)}/transitiveMembers/microsoft.graph.user"
        return [DirectoryUser.from_api(payload) for payload in self._paged(path, params)]

    def get_manager(self, user_id: str) -> Optional[str]:
        url = f"{self._graph_url}/users/{quote(user_id)}/manager"
        response = self._get(url, params={"$select": "mail,userPrincipalName"})
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise DirectoryError(f"Manager lookup for {user_id} failed with HTTP {response.status_code}")
        try:
            payload = _json_object(response)
        except ValueError as exc:
            raise DirectoryError(f"Manager lookup for {user_id} returned malformed JSON: {exc}") from exc
        return payload.get("mail") or payload.get("userPrincipalName") or None
