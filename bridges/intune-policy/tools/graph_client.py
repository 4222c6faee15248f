"""
Microsoft Graph REST Client for Intune policy reporting (MSAL client_credentials)

Provides authenticated read access to the Intune device-management and
directory endpoints of Microsoft Graph with automatic token refresh,
rate-limit handling, and JSON error mapping.

Authentication uses MSAL client_credentials flow:
  - POST to Entra ID token endpoint with client_id + client_secret
  - Tokens are valid for ~1 hour
  - Tokens are cached and auto-refreshed 5 minutes before expiry

Environment variables (or bridges/intune-policy/.env):
  AZURE_TENANT_ID      - Entra ID tenant ID
  GRAPH_CLIENT_ID      - App registration client ID
  GRAPH_CLIENT_SECRET  - App registration client secret
  GRAPH_API_BASE       - Optional, defaults to the beta endpoint

Required application permissions:
  DeviceManagementConfiguration.Read.All, DeviceManagementManagedDevices.Read.All,
  DeviceManagementApps.Read.All, DeviceManagementServiceConfig.Read.All,
  Policy.Read.All, Group.Read.All
"""

import os
import sys
import json
import time
import requests
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parents[1] / ".env")

TENANT_ID = os.getenv("AZURE_TENANT_ID", "")
CLIENT_ID = os.getenv("GRAPH_CLIENT_ID", "")
CLIENT_SECRET = os.getenv("GRAPH_CLIENT_SECRET", "")

TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
V1_BASE = "https://graph.microsoft.com/v1.0"
BETA_BASE = "https://graph.microsoft.com/beta"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Autopilot profiles and Settings Catalog policies are only exposed on beta.
API_BASE = os.getenv("GRAPH_API_BASE", BETA_BASE).rstrip("/")

TOKEN_REFRESH_BUFFER_SECS = 300


class FetchError(Exception):
    """A Graph GET that did not return a usable 200 response."""

    def __init__(self, endpoint: str, status_code: int = None, body: str = ""):
        self.endpoint = endpoint
        self.status_code = status_code
        self.body = body
        super().__init__(f"GET {endpoint} failed ({status_code}): {body}")


class GraphClient:
    """Microsoft Graph REST client with MSAL token management."""

    def __init__(
        self,
        tenant_id: str = None,
        client_id: str = None,
        client_secret: str = None,
        base_url: str = None,
        session: requests.Session = None,
    ):
        self.tenant_id = tenant_id or TENANT_ID
        self.client_id = client_id or CLIENT_ID
        self.client_secret = client_secret or CLIENT_SECRET
        self.base_url = (base_url or API_BASE).rstrip("/")

        if not all([self.tenant_id, self.client_id, self.client_secret]):
            print(
                "ERROR: Missing Microsoft Graph credentials.\n"
                "\n"
                "Required environment variables:\n"
                "  AZURE_TENANT_ID\n"
                "  GRAPH_CLIENT_ID\n"
                "  GRAPH_CLIENT_SECRET\n"
                "\n"
                "Create an App Registration in Entra ID with read-only\n"
                "DeviceManagement*, Policy and Group application permissions.\n",
                file=sys.stderr,
            )
            sys.exit(1)

        self._access_token = None
        self._token_expires_at = 0
        self.session = session or requests.Session()

    # ── OAuth Token Management ─────────────────────────────────────────

    def _get_token(self) -> str:
        """Obtain or refresh the MSAL client_credentials token."""
        now = time.time()
        if self._access_token and now < self._token_expires_at:
            return self._access_token

        token_url = TOKEN_URL_TEMPLATE.format(tenant=self.tenant_id)
        resp = self.session.post(
            token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": GRAPH_SCOPE,
            },
            timeout=30,
        )

        if resp.status_code != 200:
            print(
                f"ERROR: Token request failed ({resp.status_code}): {resp.text}",
                file=sys.stderr,
            )
            sys.exit(1)

        token_data = resp.json()
        self._access_token = token_data["access_token"]
        expires_in = token_data.get("expires_in", 3600)
        self._token_expires_at = now + expires_in - TOKEN_REFRESH_BUFFER_SECS

        return self._access_token

    def _auth_headers(self) -> dict:
        """Return headers with a valid Bearer token."""
        token = self._get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "ConsistencyLevel": "eventual",
        }

    # ── Core HTTP Methods ──────────────────────────────────────────────

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _request(
        self, method: str, endpoint: str, **kwargs
    ) -> requests.Response:
        """Make an API request with auth, rate-limit retry, and token refresh."""
        url = self._url(endpoint)
        max_retries = 3

        for attempt in range(max_retries):
            kwargs["headers"] = self._auth_headers()
            resp = self.session.request(method, url, timeout=60, **kwargs)

            if resp.status_code == 429:
                retry_after = int(resp.headers.get("Retry-After", 5))
                print(f"  Rate limited. Waiting {retry_after}s...", file=sys.stderr)
                time.sleep(retry_after)
                continue

            if resp.status_code == 401:
                self._access_token = None
                self._token_expires_at = 0
                continue

            return resp

        return resp

    def get(self, endpoint: str, params: dict = None) -> requests.Response:
        return self._request("GET", endpoint, params=params)

    def get_json(self, endpoint: str, params: dict = None) -> dict:
        """GET a single entity or collection page as parsed JSON.

        Any non-200 status or transport error becomes a FetchError carrying
        the endpoint, HTTP status and response body.
        """
        try:
            resp = self.get(endpoint, params=params)
        except requests.RequestException as e:
            raise FetchError(endpoint, None, str(e)) from e

        if resp.status_code != 200:
            raise FetchError(endpoint, resp.status_code, resp.text)

        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(endpoint, resp.status_code, f"invalid JSON: {e}") from e

    def get_value(self, endpoint: str, params: dict = None) -> list:
        """GET the first page of a collection endpoint and return its `value` array."""
        return self.get_json(endpoint, params=params).get("value", [])

    # ── Pagination Helper ──────────────────────────────────────────────

    def get_all(
        self,
        endpoint: str,
        params: dict = None,
        top: int = 100,
        max_pages: int = 100,
    ) -> list:
        """
        Paginate through all results for a list endpoint.

        Graph uses @odata.nextLink for cursor-based pagination.
        A failed page raises FetchError rather than returning a partial list.
        """
        params = dict(params or {})
        if "$top" not in params and top:
            params["$top"] = top
        results = []
        url = endpoint

        for _ in range(max_pages):
            data = self.get_json(url, params=params if not url.startswith("http") else None)
            results.extend(data.get("value", []))

            next_link = data.get("@odata.nextLink")
            if not next_link:
                break

            url = next_link
            params = None

        return results

    # ── Groups ─────────────────────────────────────────────────────────

    def get_group(self, group_id: str) -> dict:
        return self.get_json(f"groups/{group_id}", params={"$select": "id,displayName,description"})

    # ── Intune / Device Management ─────────────────────────────────────

    def list_managed_devices(self, filter_expr: str = None, top: int = 100) -> list:
        """List Intune managed devices."""
        params = {}
        if filter_expr:
            params["$filter"] = filter_expr
        return self.get_all("deviceManagement/managedDevices", params=params, top=top)

    def get_managed_device_overview(self) -> dict:
        """Get Intune managed device overview (counts by OS, compliance, etc.)."""
        return self.get_json("deviceManagement/managedDeviceOverview")

    # ── Directory / Organization ───────────────────────────────────────

    def get_organization(self) -> dict:
        """Get the organization (tenant) details."""
        orgs = self.get_value("organization")
        return orgs[0] if orgs else {}

    # ── Utility ────────────────────────────────────────────────────────

    def test_connection(self) -> dict:
        """Health check: validate credentials and device-management access."""
        try:
            self.get_value("deviceManagement/managedDevices", params={"$top": 1, "$select": "id"})
            result = {"ok": True, "device_management_accessible": True, "api_base": self.base_url}

            # Organization.Read.All is optional for this bridge
            try:
                org = self.get_organization()
                result["tenant_id"] = org.get("id")
                result["display_name"] = org.get("displayName")
            except FetchError as e:
                result["organization_info"] = f"not accessible ({e.status_code})"

            return result
        except FetchError as e:
            return {
                "ok": False,
                "error": str(e),
                "status": e.status_code,
            }


# ── CLI Entrypoint ─────────────────────────────────────────────────────
# Allows quick testing: python3 graph_client.py test

if __name__ == "__main__":
    action = sys.argv[1] if len(sys.argv) > 1 else "test"
    client = GraphClient()

    if action == "test":
        result = client.test_connection()
        print(json.dumps(result, indent=2))

    elif action == "group":
        if len(sys.argv) < 3:
            print("Usage: python3 graph_client.py group <group-id>")
            sys.exit(1)
        try:
            print(json.dumps(client.get_group(sys.argv[2]), indent=2))
        except FetchError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            sys.exit(1)

    else:
        print(f"Unknown action: {action}")
        print("Usage: python3 graph_client.py [test|group <id>]")
        sys.exit(1)
