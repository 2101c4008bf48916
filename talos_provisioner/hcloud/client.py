"""Hetzner Cloud API client."""

from typing import Any

import requests

from talos_provisioner.exceptions import ActionFailedError, ErrorCategory, HetznerAPIError
from talos_provisioner.logging_config import get_logger
from talos_provisioner.models.hcloud import Action, Firewall, Network, Server, SSHKey
from talos_provisioner.polling import PollingConfig

logger = get_logger(__name__)

HCLOUD_API_BASE = "https://api.hetzner.cloud/v1"
REQUEST_TIMEOUT = 30
ACTION_TIMEOUT = 300
ACTION_POLL_INTERVAL = 2
PAGE_SIZE = 50

# Hetzner error codes mapped onto the categories callers branch on
_ERROR_CATEGORIES = {
    "not_found": ErrorCategory.NOT_FOUND,
    "uniqueness_error": ErrorCategory.IDEMPOTENT_CONFLICT,
    "resource_in_use": ErrorCategory.RESOURCE_BUSY,
    "conflict": ErrorCategory.RESOURCE_BUSY,
    "locked": ErrorCategory.RESOURCE_BUSY,
    "timeout": ErrorCategory.TRANSIENT_NETWORK,
    "unavailable": ErrorCategory.TRANSIENT_NETWORK,
}


class HetznerCloudClient:
    """Thin wrapper over the Hetzner Cloud REST API."""

    def __init__(self, api_token: str, base_url: str = HCLOUD_API_BASE, session=None):
        """Initialize the client.

        Args:
            api_token: Hetzner Cloud API token
            base_url: API base URL
            session: Optional preconfigured requests session
        """
        if not api_token:
            raise HetznerAPIError("Hetzner Cloud API token is empty")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"}
        )

    def request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            HetznerAPIError: On transport failures and non-2xx responses
        """
        url = f"{self.base_url}/{endpoint}"
        logger.debug(f"{method} {url}")

        try:
            response = self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise HetznerAPIError(
                f"{method} {endpoint} failed: network error",
                str(e),
                category=ErrorCategory.TRANSIENT_NETWORK,
            )
        except requests.RequestException as e:
            raise HetznerAPIError(f"{method} {endpoint} failed", str(e))

        if response.ok:
            if response.status_code == 204 or not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise HetznerAPIError(f"Failed to parse API response for {endpoint}", str(e))

        raise self._error_from_response(method, endpoint, response)

    @staticmethod
    def _error_from_response(method: str, endpoint: str, response) -> HetznerAPIError:
        code = None
        message = response.text
        try:
            body = response.json()
        except ValueError:
            body = None
        error = (body.get("error") or {}) if isinstance(body, dict) else {}
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message") or message

        if code in _ERROR_CATEGORIES:
            category = _ERROR_CATEGORIES[code]
        elif response.status_code == 404:
            category = ErrorCategory.NOT_FOUND
        elif response.status_code in (502, 503, 504):
            category = ErrorCategory.TRANSIENT_NETWORK
        else:
            category = ErrorCategory.OTHER

        return HetznerAPIError(
            f"API error on {method} {endpoint}: {code or response.status_code}",
            message,
            category=category,
            code=code,
            status_code=response.status_code,
        )

    def get(self, endpoint: str, params: dict | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", endpoint, json=body)

    def delete(self, endpoint: str) -> dict[str, Any]:
        return self.request("DELETE", endpoint)

    def list_all(self, endpoint: str, key: str, params: dict | None = None) -> list[dict]:
        """Collect every page of a list endpoint."""
        items = []
        page = 1
        while page:
            query = dict(params or {}, page=page, per_page=PAGE_SIZE)
            data = self.get(endpoint, params=query)
            items.extend(data.get(key, []))
            pagination = (data.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return items

    # Servers

    def list_servers(self, label_selector: str | None = None) -> list[Server]:
        params = {"label_selector": label_selector} if label_selector else None
        return [Server(**s) for s in self.list_all("servers", "servers", params)]

    def get_server(self, server_id: int) -> Server:
        return Server(**self.get(f"servers/{server_id}")["server"])

    def create_server(self, request: dict[str, Any]) -> tuple[Server, Action]:
        data = self.post("servers", request)
        return Server(**data["server"]), Action(**data["action"])

    def delete_server(self, server_id: int) -> Action | None:
        data = self.delete(f"servers/{server_id}")
        return Action(**data["action"]) if data.get("action") else None

    # Actions

    def get_action(self, action_id: int) -> Action:
        return Action(**self.get(f"actions/{action_id}")["action"])

    def wait_for_action(self, action_id: int, timeout: float = ACTION_TIMEOUT) -> Action:
        """Poll an action until it reaches a terminal state.

        Raises:
            ActionFailedError: If the action ends in error
            PollTimeoutError: If the action is still running after ``timeout``
        """

        def check() -> Action | None:
            action = self.get_action(action_id)
            if action.status == "error":
                error = action.error
                raise ActionFailedError(
                    f"Action {action_id} ({action.command}) failed",
                    f"{error.code}: {error.message}" if error else "Unknown error",
                    code=error.code if error else None,
                )
            if action.status == "success":
                return action
            if action.status != "running":
                logger.warning(f"Unknown action status: {action.status}")
            logger.debug(f"Action {action_id} progress: {action.progress}%")
            return None

        config = PollingConfig(
            timeout=timeout,
            interval=ACTION_POLL_INTERVAL,
            description=f"Waiting for action {action_id} to complete",
        )
        return config.poll(check)

    # Networks

    def list_networks(self) -> list[Network]:
        return [Network(**n) for n in self.list_all("networks", "networks")]

    def create_network(self, request: dict[str, Any]) -> Network:
        return Network(**self.post("networks", request)["network"])

    def delete_network(self, network_id: int) -> None:
        self.delete(f"networks/{network_id}")

    # SSH keys

    def list_ssh_keys(self) -> list[SSHKey]:
        return [SSHKey(**k) for k in self.list_all("ssh_keys", "ssh_keys")]

    def create_ssh_key(self, name: str, public_key: str, labels: dict[str, str]) -> SSHKey:
        body = {"name": name, "public_key": public_key, "labels": labels}
        return SSHKey(**self.post("ssh_keys", body)["ssh_key"])

    def delete_ssh_key(self, key_id: int) -> None:
        self.delete(f"ssh_keys/{key_id}")

    # Firewalls

    def list_firewalls(self) -> list[Firewall]:
        return [Firewall(**f) for f in self.list_all("firewalls", "firewalls")]

    def create_firewall(self, request: dict[str, Any]) -> Firewall:
        return Firewall(**self.post("firewalls", request)["firewall"])

    def apply_firewall(self, firewall_id: int, server_ids: list[int]) -> list[Action]:
        body = {"apply_to": [{"type": "server", "server": {"id": sid}} for sid in server_ids]}
        data = self.post(f"firewalls/{firewall_id}/actions/apply_to_resources", body)
        return [Action(**a) for a in data.get("actions", [])]

    def delete_firewall(self, firewall_id: int) -> None:
        self.delete(f"firewalls/{firewall_id}")
