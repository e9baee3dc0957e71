# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SCRIPT                                                              ║
# ║  Name     : DriveMapping.py                                          ║
# ║  Version  : 1.0                                                      ║
# ║  Date     : 2025-09-02                                               ║
# ║  Author   : Jonathan Neerup-Andersen  ·  jna@ntg.com                 ║
# ║  License  : Free for non-commercial use (no warranty)                ║
# ║  Notes    : Map network drives at logon, optionally per AD group.    ║
# ║             Run as SYSTEM (e.g. from Intune) to install the logon    ║
# ║             task; run as a user to map drives.                       ║
# ╚══════════════════════════════════════════════════════════════════════╝

import os, re, enum, json, logging, argparse, pathlib, tempfile
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from DriveMapping_Windows import (
    DriveMappingError, DriveState, PathUnreachableError, TaskInstaller,
    TaskProvisioningError, WindowsDrives, current_identity,
)

log = logging.getLogger("DriveMapping")

# ── Configuration ──────────────────────────────────────────────────────
# Path, DriveLetter, Label, Id, GroupFilter (comma separated, empty = everyone)
# %USERNAME% in Path and Label is replaced with the signed-in user
DEFAULT_CONFIG = r'''[
  {"Path": "\\\\fs01.corp.local\\home\\%USERNAME%", "DriveLetter": "H", "Label": "Home (%USERNAME%)", "Id": 0, "GroupFilter": null},
  {"Path": "\\\\fs01.corp.local\\public", "DriveLetter": "P", "Label": "Public", "Id": 1, "GroupFilter": ""},
  {"Path": "\\\\fs01.corp.local\\finance", "DriveLetter": "X", "Label": "Finance", "Id": 2, "GroupFilter": "Finance,Finance-Managers"}
]'''

USERNAME_PLACEHOLDER = re.compile(re.escape("%USERNAME%"), re.IGNORECASE)
UNC_PATH = re.compile(r"^\\\\[^\\]+\\[^\\]+")


@dataclass
class DriveMapping:
    path: str
    drive_letter: str
    label: str = ""
    id: int = 0
    group_filter: List[str] = field(default_factory=list)


@dataclass
class MapperContext:
    username: str
    is_system: bool = False
    system_drive: str = "C"


class MappingOutcome(enum.Enum):
    ALREADY_CORRECT = "already mapped"
    CREATED = "created"
    CONFLICT_REMOVED_CREATED = "conflict removed, created"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    outcomes: List[Tuple[DriveMapping, MappingOutcome]] = field(default_factory=list)
    stale_removed: List[str] = field(default_factory=list)
    membership_failed: bool = False
    config_failed: bool = False

    def count(self, outcome: MappingOutcome) -> int:
        return sum(1 for _, o in self.outcomes if o is outcome)


# ── Config ─────────────────────────────────────────────────────────────
def _normalize_letter(value) -> str:
    return str(value or "").strip().rstrip(":").upper()


def _split_filter(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        items = value
    else:
        items = str(value).split(",")
    return [i.strip() for i in items if str(i).strip()]


def read_mappings(text: str, username: str) -> Tuple[List[DriveMapping], bool]:
    """Parse the drive list. Returns (mappings, parsed); an unreadable config gives ([], False)."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        log.error("Could not parse drive configuration, continuing with no drives: %s", e)
        return [], False
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        log.error("Drive configuration must be a JSON array, continuing with no drives")
        return [], False

    mappings = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("Path") or not entry.get("DriveLetter"):
            log.warning("Skipping incomplete drive entry: %s", entry)
            continue
        mappings.append(DriveMapping(
            path=USERNAME_PLACEHOLDER.sub(lambda _: username, str(entry["Path"])),
            drive_letter=_normalize_letter(entry["DriveLetter"]),
            label=USERNAME_PLACEHOLDER.sub(lambda _: username, str(entry.get("Label") or "")),
            id=entry.get("Id") or 0,
            group_filter=_split_filter(entry.get("GroupFilter")),
        ))
    return mappings, True


def load_mappings(text: str, username: str) -> List[DriveMapping]:
    return read_mappings(text, username)[0]


# ── Filtering ──────────────────────────────────────────────────────────
def resolve_membership(drives, mappings: List[DriveMapping]) -> Tuple[Set[str], bool]:
    """Look up the user's groups once, only if some mapping needs them.

    Returns (lower-cased group names, failed). A failed lookup yields an
    empty set so only unfiltered mappings survive.
    """
    if not any(m.group_filter for m in mappings):
        return set(), False
    try:
        groups = {g.lower() for g in drives.member_of()}
    except DriveMappingError as e:
        log.error("Could not resolve group membership, group-filtered drives will be skipped: %s", e)
        return set(), True
    log.info("User is a member of %d group(s)", len(groups))
    return groups, False


def filter_mappings(mappings: List[DriveMapping], groups: Set[str]) -> List[DriveMapping]:
    groups = {g.lower() for g in groups}
    kept = []
    for m in mappings:
        if not m.group_filter or any(f.lower() in groups for f in m.group_filter):
            kept.append(m)
        else:
            log.info("Skipping %s: -> %s, user not in %s", m.drive_letter, m.path, ", ".join(m.group_filter))
    return kept


# ── Reconcile ──────────────────────────────────────────────────────────
def is_unc(path: str) -> bool:
    return bool(path) and bool(UNC_PATH.match(path))


def _same_path(a: str, b: str) -> bool:
    return a.rstrip("\\").lower() == b.rstrip("\\").lower()


def _map_one(drives, mapping: DriveMapping, current: List[DriveState]) -> MappingOutcome:
    letter, path = mapping.drive_letter, mapping.path

    if any(d.letter == letter and _same_path(d.path, path) for d in current):
        log.info("%s: already mapped to %s", letter, path)
        return MappingOutcome.ALREADY_CORRECT

    conflicts = [d for d in current if d.letter == letter or _same_path(d.path, path)]
    try:
        for d in conflicts:
            log.info("Removing %s: (%s), conflicts with %s: -> %s", d.letter, d.path, letter, path)
            drives.remove_drive(d.letter)
            current.remove(d)
        drives.add_drive(letter, path)
    except PathUnreachableError as e:
        log.error("Could not map %s: -> %s, path is not reachable: %s", letter, path, e)
        return MappingOutcome.FAILED
    except DriveMappingError as e:
        log.error("Could not map %s: -> %s: %s", letter, path, e)
        return MappingOutcome.FAILED

    current.append(DriveState(letter, path))
    log.info("Mapped %s: -> %s", letter, path)
    if mapping.label:
        try:
            drives.set_label(letter, mapping.label)
        except DriveMappingError as e:
            log.warning("Mapped %s: but could not set label '%s': %s", letter, mapping.label, e)

    return MappingOutcome.CONFLICT_REMOVED_CREATED if conflicts else MappingOutcome.CREATED


def remove_stale_drives(drives, mappings: List[DriveMapping], exclude=()) -> List[str]:
    """Disconnect network drives that are no longer wanted. Local drives are never touched."""
    wanted = {(m.drive_letter, m.path.rstrip("\\").lower()) for m in mappings}
    removed = []
    for d in drives.list_drives(exclude=exclude):
        if not is_unc(d.path) or (d.letter, d.path.rstrip("\\").lower()) in wanted:
            continue
        try:
            drives.remove_drive(d.letter)
        except DriveMappingError as e:
            log.error("Could not remove stale drive %s: (%s): %s", d.letter, d.path, e)
            continue
        log.info("Removed stale drive %s: (%s)", d.letter, d.path)
        removed.append(d.letter)
    return removed


def reconcile(drives, mappings: List[DriveMapping], context: MapperContext,
              remove_stale: bool = False, membership_failed: bool = False,
              config_failed: bool = False) -> ReconcileResult:
    result = ReconcileResult(membership_failed=membership_failed, config_failed=config_failed)
    exclude = [context.system_drive]
    current = list(drives.list_drives(exclude=exclude))

    for mapping in mappings:
        result.outcomes.append((mapping, _map_one(drives, mapping, current)))

    if remove_stale:
        if membership_failed:
            log.warning("Group lookup failed, not removing stale drives this run")
        elif config_failed:
            log.warning("Drive configuration could not be read, not removing stale drives this run")
        else:
            result.stale_removed = remove_stale_drives(drives, mappings, exclude=exclude)

    try:
        count = drives.set_persistent_connections()
        log.info("Marked %d network connection(s) to reconnect at logon", count)
    except DriveMappingError as e:
        log.error("Could not mark network connections as persistent: %s", e)

    return result


def map_drives(drives, config_text: str, context: MapperContext, remove_stale: bool = False) -> ReconcileResult:
    mappings, parsed = read_mappings(config_text, context.username)
    log.info("Loaded %d drive mapping(s) for %s", len(mappings), context.username)
    groups, failed = resolve_membership(drives, mappings)
    wanted = filter_mappings(mappings, groups)
    return reconcile(drives, wanted, context, remove_stale=remove_stale, membership_failed=failed,
                     config_failed=not parsed)


# ── CLI ────────────────────────────────────────────────────────────────
def setup_logging(log_file: Optional[str] = None) -> None:
    if log_file is None:
        log_file = os.path.join(tempfile.gettempdir(), "DriveMapping.log")
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(log_file, encoding="utf-8")],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Map network drives for the signed-in user.")
    parser.add_argument("--config", default=os.getenv("DRIVEMAPPING_CONFIG"),
                        help="JSON file with the drive list. Defaults to DriveMapping.json next to this script, then the built-in list.")
    parser.add_argument("--remove-stale", action="store_true", default=os.getenv("DRIVEMAPPING_REMOVE_STALE") == "1",
                        help="Disconnect network drives that are not in the drive list.")
    parser.add_argument("--log-file", default=None)
    return parser


def read_config(path: Optional[str]) -> str:
    if path:
        return pathlib.Path(path).read_text(encoding="utf-8")
    sibling = pathlib.Path(__file__).with_suffix(".json")
    if sibling.is_file():
        return sibling.read_text(encoding="utf-8")
    return DEFAULT_CONFIG


def main_user(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file)
    username, is_system, system_drive = current_identity()
    context = MapperContext(username=username, is_system=is_system, system_drive=system_drive)
    result = map_drives(WindowsDrives(), read_config(args.config), context, remove_stale=args.remove_stale)
    print(f"Drives: {len(result.outcomes)}  Already mapped: {result.count(MappingOutcome.ALREADY_CORRECT)}  "
          f"Failed: {result.count(MappingOutcome.FAILED)}  Stale removed: {len(result.stale_removed)}")
    return 0


# ── SYSTEM provisioning (not deployed) ─────────────────────────────────
# Nothing below this line is copied to the machine; the deployed copy ends
# with a call to main_user().


def provision(installer, source_text: str, config_text: str) -> bool:
    try:
        installer.deploy(source_text, config_text)
        installer.write_launcher()
        installer.register()
    except TaskProvisioningError as e:
        log.error("Scheduled task provisioning failed: %s", e)
        return False

    try:
        installer.start()
    except TaskProvisioningError as e:
        log.warning("Task registered but could not be started now, it will run at next logon: %s", e)
    return True


def run(drives, installer, config_text: str, context: MapperContext, source_text: str,
        remove_stale: bool = False) -> bool:
    if context.is_system:
        log.info("Running as SYSTEM, installing scheduled task")
        return provision(installer, source_text, config_text)
    result = map_drives(drives, config_text, context, remove_stale=remove_stale)
    return not result.count(MappingOutcome.FAILED)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file)

    username, is_system, system_drive = current_identity()
    context = MapperContext(username=username, is_system=is_system, system_drive=system_drive)
    installer = TaskInstaller(
        pathlib.Path(os.getenv("ProgramData", r"C:\ProgramData")) / "DriveMapping",
        args=["--remove-stale"] if args.remove_stale else [],
    )
    ok = run(WindowsDrives(), installer, read_config(args.config), context,
             source_text=pathlib.Path(__file__).read_text(encoding="utf-8"),
             remove_stale=args.remove_stale)
    if context.is_system and not ok:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
