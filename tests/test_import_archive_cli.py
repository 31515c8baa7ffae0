import json
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from tootapp import main as main_module
from tootapp.storage.importer import AccountConflict, ImportStrategy, ImportSummary
from tests.archive_fixtures import archive_files, build_zip, make_create, make_note


def _summary(**overrides) -> ImportSummary:
    values = dict(
        account_id="https://x.example/users/bob",
        username="bob",
        strategy=ImportStrategy.REPLACE,
        is_new_account=True,
        file_name="export.zip",
        file_size=10,
        imported_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        counts={"posts": 2, "likes": 0, "bookmarks": 0, "media": 0},
        skipped={"posts": 0, "likes": 0, "bookmarks": 0, "invalid_ids": 0},
        totals={"posts": 2, "likes": 0, "bookmarks": 0, "media": 0},
    )
    values.update(overrides)
    return ImportSummary(**values)


class TestImportArchiveCli(unittest.TestCase):
    def test_import_archive_uses_configured_strategy_and_db(self) -> None:
        with (
            mock.patch.object(sys, "argv", ["tootapp", "import-archive", "export.zip", "--quiet"]),
            mock.patch("tootapp.main.import_archive", return_value=_summary()) as import_archive_mock,
            mock.patch("tootapp.main.get_import_strategy", return_value="merge"),
            mock.patch("tootapp.main.get_db_url", return_value="sqlite:///configured.db"),
            mock.patch("builtins.print") as print_mock,
        ):
            main_module.main()

        import_archive_mock.assert_called_once()
        args, kwargs = import_archive_mock.call_args
        self.assertEqual(args, ("sqlite:///configured.db", "export.zip"))
        self.assertIsNone(kwargs["on_progress"])
        conflict = AccountConflict(id="a", username="bob", display_name="Bob")
        self.assertEqual(kwargs["on_conflict"](conflict), ImportStrategy.MERGE)
        print_mock.assert_any_call("✅ Imported @bob from export.zip")

    def test_import_archive_emits_json(self) -> None:
        with (
            mock.patch.object(
                sys,
                "argv",
                ["tootapp", "import-archive", "export.zip", "--db", "sqlite:///:memory:", "--strategy", "replace", "--json"],
            ),
            mock.patch("tootapp.main.import_archive", return_value=_summary()),
            mock.patch("builtins.print") as print_mock,
        ):
            main_module.main()

        payload = json.loads(print_mock.call_args.args[0])
        self.assertEqual(payload["counts"]["posts"], 2)
        self.assertEqual(payload["imported_at"], "2024-01-01T00:00:00.000Z")

    def test_import_archive_reports_errors_verbatim(self) -> None:
        with (
            mock.patch.object(
                sys,
                "argv",
                ["tootapp", "import-archive", "export.zip", "--db", "sqlite:///:memory:", "--strategy", "ask"],
            ),
            mock.patch(
                "tootapp.main.import_archive",
                side_effect=ValueError("could not find an outbox.json in this archive"),
            ),
            mock.patch("builtins.print") as print_mock,
        ):
            main_module.main()

        print_mock.assert_called_with(
            "❌ Error importing archive: could not find an outbox.json in this archive"
        )

    def test_ask_strategy_prompts_until_valid(self) -> None:
        conflict = AccountConflict(id="a", username="bob", display_name="Bob")
        with (
            mock.patch("builtins.input", side_effect=["maybe", "2"]),
            mock.patch("builtins.print"),
        ):
            self.assertEqual(main_module._prompt_for_strategy(conflict), ImportStrategy.MERGE)

    def test_import_archive_end_to_end(self) -> None:
        data = build_zip(
            archive_files(activities=[make_create(make_note("https://x.example/@bob/1"))])
        )
        with tempfile.TemporaryDirectory() as tmpdir:
            archive_path = Path(tmpdir) / "export.zip"
            archive_path.write_bytes(data)
            db_url = f"sqlite:///{Path(tmpdir) / 'toot.db'}"
            with (
                mock.patch.object(
                    sys,
                    "argv",
                    ["tootapp", "import-archive", str(archive_path), "--db", db_url, "--strategy", "replace"],
                ),
                mock.patch("builtins.print") as print_mock,
            ):
                main_module.main()
                main_module.main()

        lines = [call.args[0] for call in print_mock.call_args_list]
        self.assertIn("✅ Imported @bob from export.zip", lines)
        self.assertIn("✅ Updated (replace) @bob from export.zip", lines)
        self.assertIn("posts: 1 (stored: 1)", lines)
