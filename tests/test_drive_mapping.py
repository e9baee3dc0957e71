"""Tests for DriveMapping."""
from __future__ import annotations

import json
import unittest

import DriveMapping as dm
from DriveMapping_Windows import (
    DriveMappingError, DriveState, MembershipLookupError, PathUnreachableError, TaskProvisioningError,
)


class FakeDrives:
    """In-memory stand-in for WindowsDrives."""

    def __init__(self, drives=(), groups=(), fail_groups=False, unreachable=(), broken=()):
        self.drives = dict(drives)
        self.groups = list(groups)
        self.fail_groups = fail_groups
        self.unreachable = set(unreachable)
        self.broken = set(broken)
        self.events = []
        self.labels = {}
        self.member_calls = 0
        self.persist_calls = 0
        self.excluded = []

    def list_drives(self, exclude=()):
        self.excluded.append(list(exclude))
        return [DriveState(l, p) for l, p in sorted(self.drives.items()) if l not in exclude]

    def add_drive(self, letter, path):
        if path in self.unreachable:
            raise PathUnreachableError(f"{path} is not reachable")
        if letter in self.broken:
            raise DriveMappingError(f"Could not map {letter}:")
        self.drives[letter] = path
        self.events.append(("add", letter, path))

    def remove_drive(self, letter):
        del self.drives[letter]
        self.events.append(("remove", letter))

    def set_label(self, letter, label):
        self.labels[letter] = label

    def set_persistent_connections(self):
        self.persist_calls += 1
        return len(self.drives)

    def member_of(self):
        self.member_calls += 1
        if self.fail_groups:
            raise MembershipLookupError("domain controller not reachable")
        return self.groups

    def removes(self):
        return [e[1] for e in self.events if e[0] == "remove"]

    def adds(self):
        return [(e[1], e[2]) for e in self.events if e[0] == "add"]


def config(*entries):
    return json.dumps(list(entries))


FINANCE = {"Path": "\\\\srv\\share", "DriveLetter": "X", "Label": "Finance", "Id": 1, "GroupFilter": "Finance"}
PUBLIC = {"Path": "\\\\srv\\public", "DriveLetter": "P", "Label": "Public", "Id": 2, "GroupFilter": None}
CONTEXT = dm.MapperContext(username="alice")


class LoadMappingsTests(unittest.TestCase):

    def test_username_placeholder_is_substituted(self) -> None:
        text = config({"Path": "\\\\srv\\home\\%username%", "DriveLetter": "h:", "Label": "Home %USERNAME%"})

        mapping, = dm.load_mappings(text, "alice")

        self.assertEqual(mapping.path, "\\\\srv\\home\\alice")
        self.assertEqual(mapping.label, "Home alice")
        self.assertEqual(mapping.drive_letter, "H")
        self.assertEqual(mapping.group_filter, [])

    def test_group_filter_is_split_on_commas(self) -> None:
        text = config(dict(FINANCE, GroupFilter="Finance, HR ,,"))

        mapping, = dm.load_mappings(text, "alice")

        self.assertEqual(mapping.group_filter, ["Finance", "HR"])

    def test_malformed_config_yields_no_mappings(self) -> None:
        with self.assertLogs("DriveMapping", level="ERROR"):
            self.assertEqual(dm.load_mappings("[{not json", "alice"), [])

    def test_single_object_is_accepted(self) -> None:
        self.assertEqual(len(dm.load_mappings(json.dumps(FINANCE), "alice")), 1)

    def test_incomplete_entries_are_skipped(self) -> None:
        with self.assertLogs("DriveMapping", level="WARNING"):
            mappings = dm.load_mappings(config({"Path": "\\\\srv\\x"}, PUBLIC), "alice")
        self.assertEqual([m.drive_letter for m in mappings], ["P"])

    def test_default_config_parses(self) -> None:
        mappings = dm.load_mappings(dm.DEFAULT_CONFIG, "alice")

        self.assertEqual([m.drive_letter for m in mappings], ["H", "P", "X"])
        self.assertEqual(mappings[0].path, "\\\\fs01.corp.local\\home\\alice")
        self.assertEqual(mappings[2].group_filter, ["Finance", "Finance-Managers"])


class FilterTests(unittest.TestCase):

    def setUp(self) -> None:
        self.mappings = dm.load_mappings(config(FINANCE, PUBLIC), "alice")

    def test_unfiltered_mapping_is_always_kept(self) -> None:
        kept = dm.filter_mappings(self.mappings, set())
        self.assertEqual([m.drive_letter for m in kept], ["P"])

    def test_filtered_mapping_needs_membership(self) -> None:
        kept = dm.filter_mappings(self.mappings, {"finance"})
        self.assertEqual([m.drive_letter for m in kept], ["X", "P"])

    def test_any_filter_entry_is_enough(self) -> None:
        mappings = dm.load_mappings(config(dict(FINANCE, GroupFilter="HR,Finance")), "alice")
        self.assertEqual(len(dm.filter_mappings(mappings, {"Finance"})), 1)

    def test_membership_not_looked_up_without_filters(self) -> None:
        drives = FakeDrives()
        groups, failed = dm.resolve_membership(drives, dm.load_mappings(config(PUBLIC), "alice"))
        self.assertEqual((groups, failed), (set(), False))
        self.assertEqual(drives.member_calls, 0)

    def test_membership_failure_is_flagged(self) -> None:
        drives = FakeDrives(fail_groups=True)
        with self.assertLogs("DriveMapping", level="ERROR"):
            groups, failed = dm.resolve_membership(drives, self.mappings)
        self.assertEqual((groups, failed), (set(), True))


class ReconcileTests(unittest.TestCase):

    def test_member_gets_group_drive(self) -> None:
        drives = FakeDrives(groups=["Finance"])

        result = dm.map_drives(drives, config(FINANCE), CONTEXT)

        self.assertEqual(drives.drives, {"X": "\\\\srv\\share"})
        self.assertEqual(result.outcomes[0][1], dm.MappingOutcome.CREATED)
        self.assertEqual(drives.labels, {"X": "Finance"})

    def test_non_member_does_not_get_group_drive(self) -> None:
        drives = FakeDrives(drives=[("X", "\\\\other\\thing")], groups=["Sales"])

        result = dm.map_drives(drives, config(FINANCE), CONTEXT)

        self.assertEqual(result.outcomes, [])
        self.assertEqual(drives.drives, {"X": "\\\\other\\thing"})
        self.assertEqual(drives.events, [])

    def test_second_run_changes_nothing(self) -> None:
        drives = FakeDrives(groups=["Finance"])
        dm.map_drives(drives, config(FINANCE, PUBLIC), CONTEXT, remove_stale=True)
        events = list(drives.events)

        result = dm.map_drives(drives, config(FINANCE, PUBLIC), CONTEXT, remove_stale=True)

        self.assertEqual(drives.events, events)
        self.assertEqual({o for _, o in result.outcomes}, {dm.MappingOutcome.ALREADY_CORRECT})

    def test_existing_match_is_case_insensitive(self) -> None:
        drives = FakeDrives(drives=[("P", "\\\\SRV\\Public\\")])

        result = dm.map_drives(drives, config(PUBLIC), CONTEXT)

        self.assertEqual(result.outcomes[0][1], dm.MappingOutcome.ALREADY_CORRECT)

    def test_conflicting_letter_is_removed_before_mapping(self) -> None:
        drives = FakeDrives(drives=[("X", "\\\\old\\share")], groups=["Finance"])

        result = dm.map_drives(drives, config(FINANCE), CONTEXT)

        self.assertEqual(drives.events, [("remove", "X"), ("add", "X", "\\\\srv\\share")])
        self.assertEqual(result.outcomes[0][1], dm.MappingOutcome.CONFLICT_REMOVED_CREATED)

    def test_same_path_on_other_letter_is_removed(self) -> None:
        drives = FakeDrives(drives=[("Q", "\\\\srv\\public")])

        dm.map_drives(drives, config(PUBLIC), CONTEXT)

        self.assertEqual(drives.drives, {"P": "\\\\srv\\public"})

    def test_unreachable_path_fails_only_that_mapping(self) -> None:
        drives = FakeDrives(groups=["Finance"], unreachable=["\\\\srv\\share"])

        with self.assertLogs("DriveMapping", level="ERROR") as logs:
            result = dm.map_drives(drives, config(FINANCE, PUBLIC), CONTEXT)

        self.assertEqual([o for _, o in result.outcomes],
                         [dm.MappingOutcome.FAILED, dm.MappingOutcome.CREATED])
        self.assertTrue(any("not reachable" in line for line in logs.output))

    def test_other_failures_are_reported_differently(self) -> None:
        drives = FakeDrives(broken=["P"])

        with self.assertLogs("DriveMapping", level="ERROR") as logs:
            result = dm.map_drives(drives, config(PUBLIC), CONTEXT)

        self.assertEqual(result.count(dm.MappingOutcome.FAILED), 1)
        self.assertFalse(any("path is not reachable" in line for line in logs.output))

    def test_stale_cleanup_only_removes_network_drives(self) -> None:
        drives = FakeDrives(drives=[("Y", "\\\\old\\stale"), ("E", "E:\\")])

        result = dm.map_drives(drives, config(PUBLIC), CONTEXT, remove_stale=True)

        self.assertEqual(result.stale_removed, ["Y"])
        self.assertEqual(drives.drives, {"E": "E:\\", "P": "\\\\srv\\public"})

    def test_stale_cleanup_is_off_by_default(self) -> None:
        drives = FakeDrives(drives=[("Y", "\\\\old\\stale")])

        dm.map_drives(drives, config(PUBLIC), CONTEXT)

        self.assertIn("Y", drives.drives)

    def test_group_lookup_failure_disables_stale_cleanup(self) -> None:
        drives = FakeDrives(drives=[("Y", "\\\\old\\stale")], fail_groups=True)

        with self.assertLogs("DriveMapping", level="WARNING"):
            result = dm.map_drives(drives, config(FINANCE, PUBLIC), CONTEXT, remove_stale=True)

        self.assertTrue(result.membership_failed)
        self.assertEqual(result.stale_removed, [])
        self.assertEqual(drives.drives, {"Y": "\\\\old\\stale", "P": "\\\\srv\\public"})

    def test_unreadable_config_disables_stale_cleanup(self) -> None:
        drives = FakeDrives(drives=[("Y", "\\\\old\\stale")])

        with self.assertLogs("DriveMapping", level="WARNING") as logs:
            result = dm.map_drives(drives, "[{not json", CONTEXT, remove_stale=True)

        self.assertTrue(result.config_failed)
        self.assertEqual(result.stale_removed, [])
        self.assertEqual(drives.drives, {"Y": "\\\\old\\stale"})
        self.assertTrue(any("not removing stale drives" in line for line in logs.output))

    def test_empty_but_valid_config_still_cleans_up(self) -> None:
        drives = FakeDrives(drives=[("Y", "\\\\old\\stale")])

        result = dm.map_drives(drives, "[]", CONTEXT, remove_stale=True)

        self.assertFalse(result.config_failed)
        self.assertEqual(result.stale_removed, ["Y"])

    def test_system_drive_is_excluded(self) -> None:
        drives = FakeDrives(drives=[("C", "C:\\")])

        dm.map_drives(drives, config(PUBLIC), dm.MapperContext(username="alice", system_drive="C"))

        self.assertTrue(all(e == ["C"] for e in drives.excluded))

    def test_connections_are_marked_persistent(self) -> None:
        drives = FakeDrives()

        dm.map_drives(drives, config(PUBLIC), CONTEXT)

        self.assertEqual(drives.persist_calls, 1)


class FakeInstaller:

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.steps = []

    def _step(self, name):
        if name == self.fail_on:
            raise TaskProvisioningError(f"{name} failed")
        self.steps.append(name)

    def deploy(self, source_text, config_text):
        self._step("deploy")

    def write_launcher(self):
        self._step("write_launcher")

    def register(self):
        self._step("register")

    def start(self):
        self._step("start")


class RunModeTests(unittest.TestCase):
    SYSTEM = dm.MapperContext(username="SYSTEM", is_system=True)

    def test_system_context_provisions_and_does_not_map(self) -> None:
        drives, installer = FakeDrives(), FakeInstaller()

        ok = dm.run(drives, installer, config(PUBLIC), self.SYSTEM, source_text="")

        self.assertTrue(ok)
        self.assertEqual(installer.steps, ["deploy", "write_launcher", "register", "start"])
        self.assertEqual(drives.events, [])

    def test_user_context_maps_and_does_not_provision(self) -> None:
        drives, installer = FakeDrives(), FakeInstaller()

        dm.run(drives, installer, config(PUBLIC), CONTEXT, source_text="")

        self.assertEqual(installer.steps, [])
        self.assertEqual(drives.adds(), [("P", "\\\\srv\\public")])

    def test_registration_failure_is_terminal(self) -> None:
        installer = FakeInstaller(fail_on="register")

        with self.assertLogs("DriveMapping", level="ERROR"):
            ok = dm.run(FakeDrives(), installer, config(PUBLIC), self.SYSTEM, source_text="")

        self.assertFalse(ok)
        self.assertEqual(installer.steps, ["deploy", "write_launcher"])

    def test_start_failure_keeps_registration(self) -> None:
        installer = FakeInstaller(fail_on="start")

        with self.assertLogs("DriveMapping", level="WARNING"):
            ok = dm.run(FakeDrives(), installer, config(PUBLIC), self.SYSTEM, source_text="")

        self.assertTrue(ok)


if __name__ == "__main__":
    unittest.main()
