import io
import os
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from skillvault.bundle import (
    PackProgress,
    default_filter,
    detect_skill_name,
    format_size,
    pack,
    resolve_install_path,
    unpack,
)
from skillvault.errors import ConfirmationRequiredError, FileSystemError, ValidationError

MANIFEST = "---\nname: demo\nversion: 1.0.0\ndescription: Demo skill\n---\n# Demo\n"


def _make_skill(root: Path, manifest: str = MANIFEST) -> Path:
    root.mkdir(parents=True)
    (root / "SKILL.md").write_text(manifest, encoding="utf-8")
    (root / "scripts").mkdir()
    (root / "scripts" / "run.sh").write_text("#!/bin/sh\necho ok\n", encoding="utf-8")
    (root / ".skillsrc").write_text("{}\n", encoding="utf-8")
    (root / ".env").write_text("SECRET=1\n", encoding="utf-8")
    (root / ".DS_Store").write_bytes(b"\x00\x01")
    (root / ".git").mkdir()
    (root / ".git" / "config").write_text("[core]\n", encoding="utf-8")
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1\n", encoding="utf-8")
    return root


def _zip(entries: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in entries.items():
            zf.writestr(name, text)
    return buf.getvalue()


class TestDefaultFilter(unittest.TestCase):
    def test_excluded_names(self) -> None:
        self.assertTrue(default_filter("SKILL.md"))
        self.assertTrue(default_filter("scripts/run.sh"))
        self.assertTrue(default_filter(".skillsrc"))
        self.assertFalse(default_filter(".git/config"))
        self.assertFalse(default_filter("node_modules/x/index.js"))
        self.assertFalse(default_filter("docs/.DS_Store"))
        self.assertFalse(default_filter("Thumbs.db"))
        self.assertFalse(default_filter(".env"))
        self.assertFalse(default_filter("lib/__pycache__/mod.pyc"))

    def test_format_size(self) -> None:
        self.assertEqual(format_size(512), "512 bytes")
        self.assertEqual(format_size(2048), "2.0 KB")
        self.assertEqual(format_size(3 * 1024 * 1024), "3.0 MB")


class TestPack(unittest.TestCase):
    def test_pack_applies_default_filter(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            result = pack(root)

            with zipfile.ZipFile(io.BytesIO(result.data), "r") as zf:
                names = sorted(zf.namelist())

        self.assertEqual(names, [".skillsrc", "SKILL.md", "scripts/run.sh"])
        self.assertEqual(result.file_count, 3)
        self.assertEqual(result.size, len(result.data))
        self.assertFalse(result.exceeded_limit)
        self.assertEqual(len(result.sha256), 64)

    def test_custom_filter(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            result = pack(root, include=lambda rel: rel == "SKILL.md")
        self.assertEqual(result.file_count, 1)

    def test_progress_reports_every_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            seen: list[PackProgress] = []
            result = pack(root, progress=seen.append)

        self.assertEqual(len(seen), result.file_count)
        self.assertEqual([p.current for p in seen], [1, 2, 3])
        self.assertTrue(all(p.total == 3 for p in seen))

    def test_compression_level_bounds(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            for level in (-1, 10):
                with self.assertRaises(ValidationError):
                    pack(root, compression_level=level)

            stored = pack(root, compression_level=0)
            with zipfile.ZipFile(io.BytesIO(stored.data), "r") as zf:
                self.assertTrue(all(i.compress_type == zipfile.ZIP_STORED for i in zf.infolist()))

    def test_soft_size_limit_only_warns(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            with self.assertLogs("skillvault.bundle", level="WARNING"):
                result = pack(root, max_bytes=10)
        self.assertTrue(result.exceeded_limit)
        self.assertGreater(result.size, 10)

    def test_missing_directory(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(FileSystemError):
                pack(Path(td) / "nope")
            (Path(td) / "file.txt").write_text("x", encoding="utf-8")
            with self.assertRaises(FileSystemError):
                pack(Path(td) / "file.txt")

    def test_top_level_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            result = pack(root, top_level_dir="demo-skill")
            with zipfile.ZipFile(io.BytesIO(result.data), "r") as zf:
                self.assertIn("demo-skill/SKILL.md", zf.namelist())

            with self.assertRaises(ValidationError):
                pack(root, top_level_dir="nested/path")


class TestUnpack(unittest.TestCase):
    def test_round_trip_preserves_content(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            target = Path(td) / "out" / "demo"
            result = unpack(pack(root).data, target_dir=target)

            self.assertEqual(result.installed_path, target.resolve())
            self.assertEqual(result.root_name, "demo")
            self.assertEqual(result.version, "1.0.0")
            self.assertEqual(result.file_count, 3)
            for rel in ("SKILL.md", "scripts/run.sh", ".skillsrc"):
                self.assertEqual((target / rel).read_bytes(), (root / rel).read_bytes())
            self.assertFalse((target / ".git").exists())

    def test_files_older_than_1980_are_packed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            os.utime(root / "SKILL.md", (0, 0))
            result = pack(root)

            with zipfile.ZipFile(io.BytesIO(result.data)) as zf:
                self.assertEqual(zf.getinfo("SKILL.md").date_time[0], 1980)

            target = Path(td) / "out" / "demo"
            unpack(result.data, target_dir=target)
            self.assertEqual((target / "SKILL.md").read_bytes(), (root / "SKILL.md").read_bytes())

    def test_accepts_single_top_level_folder(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _make_skill(Path(td) / "demo")
            target = Path(td) / "out"
            unpack(pack(root, top_level_dir="demo").data, target_dir=target)

            self.assertTrue((target / "SKILL.md").is_file())
            self.assertTrue((target / "scripts" / "run.sh").is_file())

    def test_corrupt_input_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "out" / "demo"
            for bad in (b"", b"not a zip archive"):
                with self.assertRaises(ValidationError):
                    unpack(bad, target_dir=target)
            self.assertFalse(target.exists())
            self.assertEqual(list(Path(td).iterdir()), [])

    def test_missing_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ValidationError):
                unpack(_zip({"README.md": "hi"}), target_dir=Path(td) / "demo")
            with self.assertRaises(ValidationError):
                unpack(_zip({"SKILL.md": "# no frontmatter\n"}), target_dir=Path(td) / "demo")
            self.assertFalse((Path(td) / "demo").exists())

    def test_path_traversal_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            data = _zip({"SKILL.md": MANIFEST, "../evil.txt": "boom"})
            with self.assertRaises(ValidationError):
                unpack(data, target_dir=Path(td) / "inner" / "demo")
            self.assertFalse((Path(td) / "inner" / "evil.txt").exists())
            self.assertFalse((Path(td) / "evil.txt").exists())

    def test_existing_target_requires_force(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "demo"
            target.mkdir()
            (target / "old.txt").write_text("old", encoding="utf-8")
            data = _zip({"SKILL.md": MANIFEST})

            with self.assertRaises(ConfirmationRequiredError) as ctx:
                unpack(data, target_dir=target)
            self.assertEqual(ctx.exception.path, target.resolve())
            self.assertTrue((target / "old.txt").exists())

            unpack(data, target_dir=target, force=True)
            self.assertFalse((target / "old.txt").exists())
            self.assertTrue((target / "SKILL.md").is_file())
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["demo"])

    def test_expected_name_mismatch(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ValidationError):
                unpack(_zip({"SKILL.md": MANIFEST}), target_dir=Path(td) / "other", expected_name="other")
            self.assertFalse((Path(td) / "other").exists())

    def test_local_and_global_destinations(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            home = Path(td) / "home"
            cwd = Path(td) / "project"
            with patch("pathlib.Path.home", return_value=home), patch("pathlib.Path.cwd", return_value=cwd):
                self.assertEqual(resolve_install_path("demo"), home / ".claude" / "skills" / "demo")
                self.assertEqual(resolve_install_path("demo", local=True), cwd / ".claude" / "skills" / "demo")

                result = unpack(_zip({"SKILL.md": MANIFEST}), local=True)
            self.assertEqual(result.installed_path, cwd / ".claude" / "skills" / "demo")
            self.assertTrue((cwd / ".claude" / "skills" / "demo" / "SKILL.md").is_file())

    def test_detect_skill_name(self) -> None:
        self.assertEqual(detect_skill_name(_zip({"pkg/SKILL.md": MANIFEST, "pkg/a.txt": "a"})), "demo")


if __name__ == "__main__":
    unittest.main()
