from __future__ import annotations

import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from docker_step.environment import EnvironmentView, is_falsy, is_truthy, read_list, scan_indexed
from docker_step.errors import ConfigurationError


class EnvironmentViewTests(unittest.TestCase):
    def test_snapshot_is_detached_from_source_mapping(self) -> None:
        source = {"FOO": "bar"}
        view = EnvironmentView.from_environ(source)
        source["FOO"] = "changed"
        source["NEW"] = "value"

        self.assertEqual(view.get("FOO"), "bar")
        self.assertFalse(view.is_set("NEW"))

    def test_snapshot_rejects_mutation(self) -> None:
        view = EnvironmentView({"FOO": "bar"})
        with self.assertRaises(TypeError):
            view.variables["FOO"] = "other"  # type: ignore[index]

    def test_empty_value_is_set_but_has_no_value(self) -> None:
        view = EnvironmentView({"EMPTY": ""})

        self.assertTrue(view.is_set("EMPTY"))
        self.assertEqual(view.value("EMPTY"), "")
        self.assertFalse(view.is_set("MISSING"))
        self.assertIsNone(view.get("MISSING"))

    def test_flag_matches_truthy_literals_case_sensitively(self) -> None:
        view = EnvironmentView({"A": "true", "B": "on", "C": "1", "D": "TRUE", "E": "yes"})

        self.assertTrue(view.flag("A"))
        self.assertTrue(view.flag("B"))
        self.assertTrue(view.flag("C"))
        self.assertFalse(view.flag("D"))
        self.assertFalse(view.flag("E"))

    def test_flag_falls_back_to_default_when_unset_or_empty(self) -> None:
        view = EnvironmentView({"EMPTY": ""})

        self.assertTrue(view.flag("MISSING", "on"))
        self.assertTrue(view.flag("EMPTY", "on"))
        self.assertFalse(view.flag("MISSING"))

    def test_truthy_and_falsy_literals(self) -> None:
        self.assertTrue(is_truthy("on"))
        self.assertFalse(is_truthy(None))
        self.assertTrue(is_falsy("off"))
        self.assertTrue(is_falsy("0"))
        self.assertFalse(is_falsy(""))


class ReadListTests(unittest.TestCase):
    def test_reads_contiguous_indices_in_order(self) -> None:
        view = EnvironmentView({"OPT_0": "a", "OPT_1": "b", "OPT_2": "c"})

        self.assertEqual(read_list(view, "OPT"), (["a", "b", "c"], True))

    def test_gap_truncates_list(self) -> None:
        view = EnvironmentView({"OPT_0": "a", "OPT_1": "b", "OPT_3": "d", "OPT_4": "e"})

        self.assertEqual(read_list(view, "OPT"), (["a", "b"], True))

    def test_missing_first_index_yields_nothing(self) -> None:
        view = EnvironmentView({"OPT_1": "b"})

        self.assertEqual(read_list(view, "OPT"), ([], False))

    def test_multiple_prefixes_concatenate_in_prefix_order(self) -> None:
        view = EnvironmentView({"SECOND_0": "x", "FIRST_0": "a", "FIRST_1": "b"})

        self.assertEqual(read_list(view, "FIRST", "SECOND"), (["a", "b", "x"], True))

    def test_scalar_for_list_prefix_is_rejected(self) -> None:
        view = EnvironmentView({"OPT": "scalar", "OPT_0": "a"})

        with self.assertRaises(ConfigurationError) as ctx:
            read_list(view, "OPT")

        self.assertEqual(ctx.exception.exit_code, 1)
        self.assertIn("OPT", ctx.exception.message)
        self.assertIn("expected an array", ctx.exception.message)

    def test_scalar_on_later_prefix_is_rejected_without_partial_result(self) -> None:
        view = EnvironmentView({"FIRST_0": "a", "SECOND": "oops"})

        with self.assertRaises(ConfigurationError):
            read_list(view, "FIRST", "SECOND")

    def test_empty_scalar_is_not_an_error(self) -> None:
        view = EnvironmentView({"OPT": "", "OPT_0": "a"})

        self.assertEqual(read_list(view, "OPT"), (["a"], True))


class ScanIndexedTests(unittest.TestCase):
    def test_values_follow_lexicographic_name_order(self) -> None:
        view = EnvironmentView(
            {
                "ENVIRONMENT_2": "two",
                "ENVIRONMENT_10": "ten",
                "ENVIRONMENT_0": "zero",
                "ENVIRONMENT_1": "one",
            }
        )

        self.assertEqual(scan_indexed(view, "ENVIRONMENT"), ["zero", "one", "ten", "two"])

    def test_sparse_indices_are_all_discovered(self) -> None:
        view = EnvironmentView({"ADD_HOST_3": "c:1.1.1.1", "ADD_HOST_7": "d:2.2.2.2"})

        self.assertEqual(scan_indexed(view, "ADD_HOST"), ["c:1.1.1.1", "d:2.2.2.2"])

    def test_only_exact_prefix_with_numeric_suffix_matches(self) -> None:
        view = EnvironmentView(
            {
                "GROUPS": "scalar",
                "GROUPS_0": "docker",
                "GROUPS_X": "nope",
                "GROUPS_1_EXTRA": "nope",
                "OTHER_GROUPS_0": "nope",
            }
        )

        self.assertEqual(scan_indexed(view, "GROUPS"), ["docker"])


if __name__ == "__main__":
    unittest.main()
