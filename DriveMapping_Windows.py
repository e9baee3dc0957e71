# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SCRIPT                                                              ║
# ║  Name     : DriveMapping_Windows.py                                  ║
# ║  Version  : 1.0                                                      ║
# ║  Date     : 2025-09-02                                               ║
# ║  Author   : Jonathan Neerup-Andersen  ·  jna@ntg.com                 ║
# ║  License  : Free for non-commercial use (no warranty)                ║
# ║  Notes    : Windows side of DriveMapping.py (drives, registry, AD,   ║
# ║             Task Scheduler). Requires pywin32.                       ║
# ╚══════════════════════════════════════════════════════════════════════╝

import os, sys, logging, pathlib
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

log = logging.getLogger("DriveMapping")

# ── Constants ──────────────────────────────────────────────────────────
SYSTEM_SID = "S-1-5-18"
USERS_SID = "S-1-5-32-545"
TASK_NAME = "DriveMapping"
DEPLOY_MARKER = "# ── SYSTEM provisioning (not deployed)"
NETWORK_PROFILE_LOG = "Microsoft-Windows-NetworkProfile/Operational"
NETWORK_EVENT_IDS = (10000, 4004)  # network connected, network state change

# Win32 errors that mean "the share is not there / not reachable"
UNREACHABLE_ERRORS = {
    53,    # ERROR_BAD_NETPATH
    67,    # ERROR_BAD_NET_NAME
    1203,  # ERROR_NO_NET_OR_BAD_PATH
    1222,  # ERROR_NO_NETWORK
    1231,  # ERROR_NETWORK_UNREACHABLE
}

# Task Scheduler 2.0 enums
TASK_TRIGGER_EVENT = 0
TASK_TRIGGER_LOGON = 9
TASK_ACTION_EXEC = 0
TASK_CREATE_OR_UPDATE = 6
TASK_LOGON_GROUP = 4
TASK_RUNLEVEL_LUA = 0
TASK_INSTANCES_IGNORE_NEW = 2

USER_ENTRY = '''

if __name__ == "__main__":
    raise SystemExit(main_user())
'''


class DriveMappingError(Exception):
    pass


class PathUnreachableError(DriveMappingError):
    pass


class MembershipLookupError(DriveMappingError):
    pass


class TaskProvisioningError(Exception):
    pass


class DriveState(NamedTuple):
    letter: str
    path: str


# ── Pure helpers ───────────────────────────────────────────────────────
def script_before_marker(text: str, marker: str = DEPLOY_MARKER) -> str:
    lines = text.splitlines(keepends=True)
    for i, line in enumerate(lines):
        if line.startswith(marker):
            return "".join(lines[:i]).rstrip() + "\n"
    raise TaskProvisioningError(f"Marker '{marker}' not found in script")


def _vbs_quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def launcher_script(python_exe: str, script_path: str, args: Iterable[str] = ()) -> str:
    """VBScript that starts the mapper without flashing a console window."""
    command = " ".join([_vbs_quote(python_exe), _vbs_quote(script_path)] + [_vbs_quote(a) for a in args])
    # The whole command line is itself a VBS string literal
    return (
        'Set shell = CreateObject("WScript.Shell")\r\n'
        f"shell.Run {_vbs_quote(command)}, 0, False\r\n"
    )


def event_subscription(event_id: int, log_name: str = NETWORK_PROFILE_LOG) -> str:
    return (
        f'<QueryList><Query Id="0" Path="{log_name}">'
        f'<Select Path="{log_name}">'
        f"*[System[Provider[@Name='Microsoft-Windows-NetworkProfile'] and EventID={event_id}]]"
        "</Select></Query></QueryList>"
    )


def _ldap_escape(value: str) -> str:
    # RFC 4515 filter escaping
    out = value.replace("\\", "\\5c")
    for ch, esc in (("*", "\\2a"), ("(", "\\28"), (")", "\\29"), ("\x00", "\\00")):
        out = out.replace(ch, esc)
    return out


# ── Identity ───────────────────────────────────────────────────────────
def current_identity() -> Tuple[str, bool, str]:
    """Return (user name, running as SYSTEM, system drive letter)."""
    import win32api, win32security

    token = win32security.OpenProcessToken(win32api.GetCurrentProcess(), win32security.TOKEN_QUERY)
    sid, _ = win32security.GetTokenInformation(token, win32security.TokenUser)
    is_system = win32security.ConvertSidToStringSid(sid) == SYSTEM_SID
    system_drive = os.environ.get("SystemDrive", "C:")[:1].upper()
    return win32api.GetUserName(), is_system, system_drive


# ── Drives ─────────────────────────────────────────────────────────────
class WindowsDrives:
    """Drive letters, labels and network persistence for the interactive user."""

    def list_drives(self, exclude: Iterable[str] = ()) -> List[DriveState]:
        import pywintypes, win32api, win32file, win32wnet

        skip = {e.upper()[:1] for e in exclude}
        remembered = self._remembered_connections()
        drives = {}
        for root in win32api.GetLogicalDriveStrings().split("\x00"):
            if not root or root[0].upper() in skip:
                continue
            letter = root[0].upper()
            path = root
            if win32file.GetDriveType(root) == win32file.DRIVE_REMOTE:
                try:
                    path = win32wnet.WNetGetConnection(f"{letter}:")
                except pywintypes.error:
                    # Saved mapping whose share is offline
                    path = remembered.get(letter, root)
            drives[letter] = DriveState(letter, path)

        for letter, path in remembered.items():
            if letter not in skip and letter not in drives:
                drives[letter] = DriveState(letter, path)

        return sorted(drives.values())

    def _remembered_connections(self) -> Dict[str, str]:
        import win32netcon, win32wnet

        remembered = {}
        handle = win32wnet.WNetOpenEnum(win32netcon.RESOURCE_REMEMBERED, win32netcon.RESOURCETYPE_DISK, 0, None)
        try:
            while True:
                items = win32wnet.WNetEnumResource(handle, 0)
                if not items:
                    break
                for item in items:
                    if item.lpLocalName:
                        remembered[item.lpLocalName[0].upper()] = item.lpRemoteName
        finally:
            win32wnet.WNetCloseEnum(handle)
        return remembered

    def add_drive(self, letter: str, path: str) -> None:
        import pywintypes, win32netcon, win32wnet

        resource = win32wnet.NETRESOURCE()
        resource.dwType = win32netcon.RESOURCETYPE_DISK
        resource.lpLocalName = f"{letter}:"
        resource.lpRemoteName = path
        try:
            win32wnet.WNetAddConnection2(resource, None, None, win32netcon.CONNECT_UPDATE_PROFILE)
        except pywintypes.error as e:
            if e.winerror in UNREACHABLE_ERRORS:
                raise PathUnreachableError(f"{path} is not reachable: {e.strerror}") from e
            raise DriveMappingError(f"Could not map {letter}: to {path}: {e.strerror}") from e

    def remove_drive(self, letter: str) -> None:
        import pywintypes, win32netcon, win32wnet

        try:
            win32wnet.WNetCancelConnection2(f"{letter}:", win32netcon.CONNECT_UPDATE_PROFILE, True)
        except pywintypes.error as e:
            raise DriveMappingError(f"Could not remove {letter}: {e.strerror}") from e

    def set_label(self, letter: str, label: str) -> None:
        import pywintypes, win32com.client

        try:
            shell = win32com.client.Dispatch("Shell.Application")
            shell.NameSpace(f"{letter}:\\").Self.Name = label
        except (pywintypes.com_error, AttributeError) as e:
            raise DriveMappingError(f"Could not set label on {letter}: {e}") from e

    def set_persistent_connections(self) -> int:
        """Flag every HKCU\\Network entry to reconnect at logon."""
        import winreg

        count = 0
        failed = []
        try:
            root = winreg.OpenKey(winreg.HKEY_CURRENT_USER, "Network")
        except FileNotFoundError:
            return 0
        with root:
            i = 0
            while True:
                try:
                    name = winreg.EnumKey(root, i)
                except OSError:
                    break
                i += 1
                try:
                    with winreg.OpenKey(root, name, 0, winreg.KEY_SET_VALUE) as key:
                        winreg.SetValueEx(key, "ConnectionType", 0, winreg.REG_DWORD, 1)
                        winreg.SetValueEx(key, "ProviderFlags", 0, winreg.REG_DWORD, 1)
                    count += 1
                except OSError as e:
                    log.error("Could not update HKCU\\Network\\%s: %s", name, e)
                    failed.append(name)
        if failed:
            raise DriveMappingError(f"Could not mark {', '.join(failed)} as persistent ({count} marked)")
        return count

    def member_of(self) -> List[str]:
        """Names of every group the current user is in, nested groups included."""
        import pywintypes, win32api, win32con, win32com.client

        try:
            dn = win32api.GetUserNameEx(win32con.NameFullyQualifiedDN)
            base = win32com.client.GetObject("LDAP://RootDSE").Get("defaultNamingContext")

            conn = win32com.client.Dispatch("ADODB.Connection")
            conn.Provider = "ADsDSOObject"
            conn.Open("Active Directory Provider")
            try:
                # 1.2.840.113556.1.4.1941 = LDAP_MATCHING_RULE_IN_CHAIN
                query = (f"<LDAP://{base}>;"
                         f"(&(objectCategory=group)(member:1.2.840.113556.1.4.1941:={_ldap_escape(dn)}));"
                         "name;subtree")
                records, _ = conn.Execute(query)
                groups = []
                while not records.EOF:
                    groups.append(records.Fields("name").Value)
                    records.MoveNext()
            finally:
                conn.Close()
        except (pywintypes.error, pywintypes.com_error) as e:
            raise MembershipLookupError(f"Group membership lookup failed: {e}") from e
        return groups


# ── Scheduled task ─────────────────────────────────────────────────────
class TaskInstaller:
    """Copies the mapper to a fixed folder and runs it for every user at logon."""

    def __init__(self, install_dir, task_name: str = TASK_NAME, python_exe: Optional[str] = None,
                 args: Iterable[str] = ()):
        self.install_dir = pathlib.Path(install_dir)
        self.task_name = task_name
        self.python_exe = python_exe or str(pathlib.Path(sys.executable).with_name("pythonw.exe"))
        self.args = list(args)
        self.script_path = self.install_dir / "DriveMapping.py"
        self.launcher_path = self.install_dir / "DriveMapping.vbs"

    def deploy(self, source_text: str, config_text: str) -> None:
        script = script_before_marker(source_text) + USER_ENTRY
        try:
            self.install_dir.mkdir(parents=True, exist_ok=True)
            self.script_path.write_text(script, encoding="utf-8")
            (self.install_dir / "DriveMapping_Windows.py").write_text(
                pathlib.Path(__file__).read_text(encoding="utf-8"), encoding="utf-8")
            (self.install_dir / "DriveMapping.json").write_text(config_text, encoding="utf-8")
        except OSError as e:
            raise TaskProvisioningError(f"Could not deploy to {self.install_dir}: {e}") from e
        log.info("Deployed mapper to %s", self.install_dir)

    def write_launcher(self) -> None:
        try:
            self.launcher_path.write_text(
                launcher_script(self.python_exe, str(self.script_path), self.args), encoding="utf-8")
        except OSError as e:
            raise TaskProvisioningError(f"Could not write launcher {self.launcher_path}: {e}") from e

    def _folder(self):
        import win32com.client

        scheduler = win32com.client.Dispatch("Schedule.Service")
        scheduler.Connect()
        return scheduler, scheduler.GetFolder("\\")

    def register(self) -> None:
        import pywintypes

        try:
            scheduler, folder = self._folder()
            definition = scheduler.NewTask(0)
            definition.RegistrationInfo.Description = "Maps network drives at logon and on network changes."
            definition.Principal.GroupId = USERS_SID
            definition.Principal.RunLevel = TASK_RUNLEVEL_LUA

            settings = definition.Settings
            settings.Enabled = True
            settings.StartWhenAvailable = True
            settings.DisallowStartIfOnBatteries = False
            settings.StopIfGoingOnBatteries = False
            settings.ExecutionTimeLimit = "PT10M"
            settings.MultipleInstances = TASK_INSTANCES_IGNORE_NEW

            definition.Triggers.Create(TASK_TRIGGER_LOGON)
            for event_id in NETWORK_EVENT_IDS:
                trigger = definition.Triggers.Create(TASK_TRIGGER_EVENT)
                trigger.Subscription = event_subscription(event_id)

            action = definition.Actions.Create(TASK_ACTION_EXEC)
            action.Path = "wscript.exe"
            action.Arguments = f'"{self.launcher_path}"'

            # Only reached once every piece above was built
            folder.RegisterTaskDefinition(self.task_name, definition, TASK_CREATE_OR_UPDATE,
                                          USERS_SID, None, TASK_LOGON_GROUP)
        except pywintypes.com_error as e:
            raise TaskProvisioningError(f"Could not register task '{self.task_name}': {e}") from e
        log.info("Registered scheduled task '%s'", self.task_name)

    def start(self) -> None:
        import pywintypes

        try:
            _, folder = self._folder()
            folder.GetTask(self.task_name).Run(None)
        except pywintypes.com_error as e:
            raise TaskProvisioningError(f"Could not start task '{self.task_name}': {e}") from e
