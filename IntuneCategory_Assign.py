# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SCRIPT                                                              ║
# ║  Name     : IntuneCategory_Assign.py                                 ║
# ║  Version  : 1.0                                                      ║
# ║  Date     : 2025-09-02                                               ║
# ║  Author   : Jonathan Neerup-Andersen  ·  jna@ntg.com                 ║
# ║  License  : Free for non-commercial use (no warranty)                ║
# ║  Notes    : Set Intune device categories from the primary user's     ║
# ║             Entra group membership                                   ║
# ╚══════════════════════════════════════════════════════════════════════╝

import os, json, logging, argparse, datetime, pathlib
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

import requests
import msal
from msal import ConfidentialClientApplication
from msal_extensions import PersistedTokenCache, build_encrypted_persistence, FilePersistence

log = logging.getLogger("IntuneCategory_Assign")

# ── Configuration ──────────────────────────────────────────────────────
# Set these env vars: TENANT_ID, CLIENT_ID, CLIENT_SECRET (app-only)
# Delegated runs (--delegated) only need TENANT_ID and CLIENT_ID
GRAPH_VERSION = os.getenv("GRAPH_VERSION", "beta")  # deviceCategory/$ref lives on beta
SCOPE = ["https://graph.microsoft.com/.default"]
DELEGATED_SCOPES = ["DeviceManagementManagedDevices.ReadWrite.All", "GroupMember.Read.All", "User.Read.All"]
TIMEOUT_S = 30

# Group display name -> device category display name
DEFAULT_CATEGORY_MAP = {
    "AZR-S-All Chicago Users": "CHI Device",
    "AZR-S-All Denver Users": "DEN Device",
    "AZR-S-All Seattle Users": "SEA Device",
}

USER_TYPE = "#microsoft.graph.user"


@dataclass
class AssignmentSummary:
    assigned: int = 0
    verified: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0


# ── Auth ───────────────────────────────────────────────────────────────
def token_cache(cache_path: Optional[str] = None):
    if cache_path is None:
        cache_dir = pathlib.Path(os.getenv("LOCALAPPDATA", pathlib.Path.home())) / "IntuneCategory_Assign"
        cache_dir.mkdir(parents=True, exist_ok=True)
        cache_path = str(cache_dir / "msal_cache.bin")
    try:
        persistence = build_encrypted_persistence(cache_path)
    except Exception:
        if os.getenv("ALLOW_PLAINTEXT_CACHE") == "1":
            persistence = FilePersistence(cache_path)
        else:
            raise
    return PersistedTokenCache(persistence)


def acquire_token(tenant_id: str, client_id: str, client_secret: Optional[str] = None,
                  cache_path: Optional[str] = None) -> str:
    authority = f"https://login.microsoftonline.com/{tenant_id}"

    if client_secret:
        app = ConfidentialClientApplication(
            client_id=client_id,
            client_credential=client_secret,
            authority=authority,
        )
        result = app.acquire_token_silent(SCOPE, account=None) or app.acquire_token_for_client(scopes=SCOPE)
    else:
        app = msal.PublicClientApplication(client_id, authority=authority, token_cache=token_cache(cache_path))
        acct = next(iter(app.get_accounts()), None)
        result = app.acquire_token_silent(DELEGATED_SCOPES, account=acct)
        if not result:
            flow = app.initiate_device_flow(scopes=DELEGATED_SCOPES)
            if "user_code" not in flow:
                raise SystemExit(f"Device code start failed: {flow.get('error')} - {flow.get('error_description')}")
            print(flow["message"])
            result = app.acquire_token_by_device_flow(flow)

    if "access_token" not in result:
        raise SystemExit(f"Auth failed: {result.get('error')} - {result.get('error_description')}")
    return result["access_token"]


# ── Graph helpers ──────────────────────────────────────────────────────
def _odata_escape(value: str) -> str:
    # OData single quotes are escaped by doubling them
    return value.replace("'", "''")


class GraphClient:
    """Thin wrapper over requests for one versioned Graph endpoint."""

    def __init__(self, token: str, version: str = GRAPH_VERSION, session: Optional[requests.Session] = None):
        self.base = f"https://graph.microsoft.com/{version}"
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def url(self, path: str) -> str:
        if path.startswith("https://"):
            return path
        return f"{self.base}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs):
        kwargs.setdefault("timeout", TIMEOUT_S)
        resp = self.session.request(method, self.url(path), **kwargs)
        resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def paged_get(self, path: str) -> Iterator[dict]:
        url = path
        while url:
            data = self.request("GET", url) or {}
            yield from data.get("value", [])
            url = data.get("@odata.nextLink")


# ── Lookups ────────────────────────────────────────────────────────────
def find_group(client: GraphClient, name: str) -> Optional[dict]:
    escaped = _odata_escape(name)
    matches = [
        g for g in client.paged_get(f"groups?$select=id,displayName&$filter=displayName eq '{escaped}'")
        if g.get("displayName") == name
    ]
    if not matches:
        log.warning("No group found with displayName = '%s', skipping", name)
        return None
    if len(matches) > 1:
        ids = ", ".join(g["id"] for g in matches)
        log.warning("Multiple groups found with displayName = '%s' (%s). Using the first one: %s",
                    name, ids, matches[0]["id"])
    return matches[0]


def group_member_upns(client: GraphClient, group_id: str) -> List[str]:
    upns = []
    for member in client.paged_get(f"groups/{group_id}/members?$select=id"):
        if member.get("@odata.type") != USER_TYPE:
            continue
        try:
            user = client.request("GET", f"users/{member['id']}?$select=id,userPrincipalName")
        except requests.RequestException as e:
            log.error("Could not resolve user %s: %s", member["id"], e)
            continue
        upn = (user or {}).get("userPrincipalName")
        if not upn:
            log.warning("User %s has no userPrincipalName, skipping", member["id"])
            continue
        upns.append(upn)
    return upns


def find_managed_devices(client: GraphClient, upn: str) -> List[dict]:
    escaped = _odata_escape(upn)
    select = "id,deviceName,userPrincipalName,deviceCategoryDisplayName"
    return [
        d for d in client.paged_get(
            f"deviceManagement/managedDevices?$select={select}&$filter=userPrincipalName eq '{escaped}'")
        if (d.get("userPrincipalName") or "").lower() == upn.lower()
    ]


def find_category(client: GraphClient, name: str) -> Optional[dict]:
    for category in client.paged_get("deviceManagement/deviceCategories"):
        if category.get("displayName") == name:
            return category
    return None


# ── Assignment ─────────────────────────────────────────────────────────
def assign_category(client: GraphClient, device: dict, category_name: str) -> Optional[str]:
    """Point a managed device at a category and read it back.

    Returns "verified" when the device reports the new category afterwards,
    "unverified" when the update went through but the read-back disagrees,
    and None when the assignment was skipped.
    """
    category = find_category(client, category_name)
    if category is None:
        log.warning("Device category '%s' not found, not assigning %s", category_name, device.get("deviceName"))
        return None

    body = {"@odata.id": client.url(f"deviceManagement/deviceCategories/{category['id']}")}
    client.request("PUT", f"deviceManagement/managedDevices/{device['id']}/deviceCategory/$ref", json=body)
    log.info("Assigned '%s' to %s (%s)", category_name, device.get("deviceName"), device["id"])

    current = client.request("GET", f"deviceManagement/managedDevices/{device['id']}?$select=id,deviceCategoryDisplayName") or {}
    if current.get("deviceCategoryDisplayName") == category_name:
        log.info("Verified %s is now in '%s'", device.get("deviceName"), category_name)
        return "verified"
    log.warning("Device %s reports category '%s' after assigning '%s'",
                device.get("deviceName"), current.get("deviceCategoryDisplayName"), category_name)
    return "unverified"


def assign_categories(client: GraphClient, mapping: Dict[str, str], skip_current: bool = False) -> AssignmentSummary:
    summary = AssignmentSummary()

    for group_name, category_name in mapping.items():
        log.info("Processing group '%s' -> category '%s'", group_name, category_name)
        try:
            group = find_group(client, group_name)
            if group is None:
                summary.skipped += 1
                continue
            upns = group_member_upns(client, group["id"])
        except requests.RequestException as e:
            log.error("Failed to resolve group '%s': %s", group_name, e)
            summary.failed += 1
            continue
        log.info("Group '%s' (%s) has %d user(s)", group_name, group["id"], len(upns))

        for upn in upns:
            try:
                devices = find_managed_devices(client, upn)
            except requests.RequestException as e:
                log.error("Failed to look up devices for %s: %s", upn, e)
                summary.failed += 1
                continue
            if not devices:
                log.warning("No managed devices found for %s", upn)
                summary.skipped += 1
                continue

            for device in devices:
                if skip_current and device.get("deviceCategoryDisplayName") == category_name:
                    log.info("%s already in '%s'", device.get("deviceName"), category_name)
                    summary.unchanged += 1
                    continue
                try:
                    outcome = assign_category(client, device, category_name)
                except requests.RequestException as e:
                    log.error("Failed to assign '%s' to %s: %s", category_name, device.get("deviceName"), e)
                    summary.failed += 1
                    continue
                if outcome is None:
                    summary.skipped += 1
                    continue
                summary.assigned += 1
                if outcome == "verified":
                    summary.verified += 1

    return summary


# ── Config / logging ───────────────────────────────────────────────────
def load_category_map(path: Optional[str]) -> Dict[str, str]:
    if not path:
        return dict(DEFAULT_CATEGORY_MAP)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Category map {path} must be a JSON object of group name -> category name")
    return {str(k): str(v) for k, v in data.items()}


def setup_logging(log_file: Optional[str] = None) -> None:
    if log_file is None:
        log_file = f"Logs/IntuneCategory_Assign-{datetime.date.today()}.log"
    pathlib.Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(log_file, encoding="utf-8")],
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Assign Intune device categories based on the primary user's group membership.")
    parser.add_argument("--map", dest="map_file", default=os.getenv("CATEGORY_MAP_FILE"),
                        help="JSON file of {group display name: device category display name}.")
    parser.add_argument("--delegated", action="store_true", help="Sign in interactively (device code) instead of using CLIENT_SECRET.")
    parser.add_argument("--skip-current", action="store_true", help="Leave devices alone that already report the target category.")
    parser.add_argument("--log-file", default=None)
    args = parser.parse_args(argv)

    setup_logging(args.log_file)

    tenant_id = os.getenv("TENANT_ID")
    client_id = os.getenv("CLIENT_ID")
    client_secret = None if args.delegated else os.getenv("CLIENT_SECRET")
    required = {"TENANT_ID": tenant_id, "CLIENT_ID": client_id}
    if not args.delegated:
        required["CLIENT_SECRET"] = client_secret
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise SystemExit(f"Missing required env vars: {', '.join(missing)}")

    mapping = load_category_map(args.map_file)
    client = GraphClient(acquire_token(tenant_id, client_id, client_secret))
    summary = assign_categories(client, mapping, skip_current=args.skip_current)

    print(f"Groups: {len(mapping)}")
    print(f"Assigned: {summary.assigned} (verified {summary.verified})  Unchanged: {summary.unchanged}  Skipped: {summary.skipped}  Failed: {summary.failed}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
