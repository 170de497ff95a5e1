import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from skillvault import lockfile
from skillvault.cli import build_parser, main
from skillvault.config import Config
from skillvault.errors import DependencyError, DependencyErrorKind, NetworkError
from skillvault.installer import InstallResult
from skillvault.lockfile import InstalledSkillRecord

MANIFEST = "---\nname: demo\nversion: 0.3.0\n---\n# Demo\n"


def _run(argv: list[str]) -> tuple[int, str, str]:
    with patch("sys.stdout", new=io.StringIO()) as out, patch("sys.stderr", new=io.StringIO()) as err:
        rc = main(argv)
    return rc, out.getvalue(), err.getvalue()


class TestParser(unittest.TestCase):
    def test_install_flags(self) -> None:
        args = build_parser().parse_args(["install", "pdf-tools@1.0.0", "--local", "--force", "--no-lock", "-v"])
        self.assertEqual(args.skill, "pdf-tools@1.0.0")
        self.assertTrue(args.local)
        self.assertTrue(args.force)
        self.assertTrue(args.no_lock)
        self.assertTrue(args.verbose)

    def test_alias(self) -> None:
        args = build_parser().parse_args(["i", "pdf-tools"])
        self.assertEqual(args.cmd, "i")


class TestPackUnpack(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.dir = Path(self._td.name)
        self.skill = self.dir / "demo"
        self.skill.mkdir()
        (self.skill / "SKILL.md").write_text(MANIFEST, encoding="utf-8")
        (self.skill / "tool.py").write_text("print('hi')\n", encoding="utf-8")

    def test_pack_writes_archive(self) -> None:
        out = self.dir / "demo.zip"
        rc, stdout, _ = _run(["pack", str(self.skill), "-o", str(out), "--json"])

        self.assertEqual(rc, 0)
        payload = json.loads(stdout)
        self.assertEqual(payload["file_count"], 2)
        self.assertEqual(payload["output"], str(out))
        self.assertTrue(out.is_file())

    def test_pack_bad_level_is_user_error(self) -> None:
        rc, _, stderr = _run(["pack", str(self.skill), "-o", str(self.dir / "x.zip"), "--level", "12"])
        self.assertEqual(rc, 1)
        self.assertIn("error:", stderr)

    def test_unpack_then_confirm_overwrite(self) -> None:
        archive = self.dir / "demo.zip"
        target = self.dir / "installed"
        self.assertEqual(_run(["pack", str(self.skill), "-o", str(archive)])[0], 0)

        rc, stdout, _ = _run(["unpack", str(archive), "--target", str(target)])
        self.assertEqual(rc, 0)
        self.assertIn("demo@0.3.0", stdout)
        self.assertTrue((target / "tool.py").is_file())

        rc, _, stderr = _run(["unpack", str(archive), "--target", str(target)])
        self.assertEqual(rc, 1)
        self.assertIn("already exists", stderr)

        rc, _, _ = _run(["unpack", str(archive), "--target", str(target), "--force"])
        self.assertEqual(rc, 0)

    def test_unpack_missing_archive_is_system_error(self) -> None:
        rc, _, stderr = _run(["unpack", str(self.dir / "nope.zip")])
        self.assertEqual(rc, 2)
        self.assertIn("error:", stderr)

    def test_unpack_corrupt_archive_is_user_error(self) -> None:
        bad = self.dir / "bad.zip"
        bad.write_bytes(b"garbage")
        rc, _, _ = _run(["unpack", str(bad), "--target", str(self.dir / "t")])
        self.assertEqual(rc, 1)
        self.assertFalse((self.dir / "t").exists())


class TestInstallCommand(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.location = Path(self._td.name) / "skills"

    def test_install_json(self) -> None:
        result = InstallResult(
            installed_names=("b@1.0.0", "a@1.0.0"),
            dependency_count=1,
            total_bytes=2048,
            elapsed_time=0.25,
            warnings=("lock skipped",),
            lock_path=None,
        )
        install = AsyncMock(return_value=result)
        with patch("skillvault.cli.load_config", return_value=Config()), patch("skillvault.cli.Installer.install", new=install):
            rc, stdout, _ = _run(["install", "a", "--install-location", str(self.location), "--json", "--no-lock"])

        self.assertEqual(rc, 0)
        payload = json.loads(stdout)
        self.assertEqual(payload["installed"], ["b@1.0.0", "a@1.0.0"])
        self.assertEqual(payload["dependency_count"], 1)
        self.assertEqual(payload["warnings"], ["lock skipped"])
        self.assertEqual(install.call_args.args, ("a",))
        self.assertTrue(install.call_args.kwargs["no_lock"])
        self.assertEqual(install.call_args.kwargs["install_location"], self.location)

    def test_exit_codes(self) -> None:
        cases = [
            (DependencyError("cycle", kind=DependencyErrorKind.CIRCULAR, name="a"), 1),
            (NetworkError("gateway down"), 2),
        ]
        for exc, code in cases:
            with self.subTest(exc=exc):
                install = AsyncMock(side_effect=exc)
                with patch("skillvault.cli.load_config", return_value=Config()), patch(
                    "skillvault.cli.Installer.install", new=install
                ):
                    rc, _, stderr = _run(["install", "a", "--install-location", str(self.location)])
                self.assertEqual(rc, code)
                self.assertIn(f"error: {exc}", stderr)

    def test_http_gateway_flag_is_rejected(self) -> None:
        with patch("skillvault.cli.load_config", return_value=Config()):
            rc, _, stderr = _run(["install", "a", "--gateway-url", "http://insecure.test"])
        self.assertEqual(rc, 1)
        self.assertIn("HTTPS", stderr)


class TestLockAndConfigCommands(unittest.TestCase):
    def test_lock_show(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            location = Path(td) / "skills"
            record = InstalledSkillRecord(
                name="a",
                version="1.0.0",
                content_address="x" * 43,
                installed_at=1,
                installed_path=str(location / "a"),
                dependencies=(
                    InstalledSkillRecord(
                        name="b",
                        version="2.0.0",
                        content_address="y" * 43,
                        installed_at=1,
                        installed_path=str(location / "b"),
                    ),
                ),
                is_direct_dependency=True,
            )
            lockfile.update(lockfile.resolve_lock_file_path(location), [record])

            rc, stdout, _ = _run(["lock", "show", "--install-location", str(location)])

        self.assertEqual(rc, 0)
        self.assertIn("NAME", stdout)
        self.assertIn("a  ", stdout)
        self.assertIn("2.0.0", stdout)

    def test_config_set_and_show(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            with patch.dict("os.environ", {}, clear=True):
                rc, stdout, _ = _run(["--config", str(path), "config", "set", "--max-depth", "4"])
                self.assertEqual(rc, 0)
                self.assertIn(str(path), stdout)

                rc, stdout, _ = _run(["--config", str(path), "config", "show"])
            self.assertEqual(rc, 0)
            self.assertEqual(json.loads(stdout)["max_depth"], 4)


if __name__ == "__main__":
    unittest.main()
