from __future__ import annotations
import json
from pathlib import Path
import pytest
from grip_installer import FilesystemError, InstalledPackage, PackageState


def test_load_absent(tmp_path: Path) -> None:
    assert PackageState.load(tmp_path / "nonexistent") == PackageState()


def test_save_load_roundtrip(tmp_path: Path) -> None:
    state = PackageState()
    state.add_package(
        "foo",
        "1.2.0",
        tmp_path / "packages" / "foo" / "1.2.0",
        tmp_path / "packages" / "foo" / "1.2.0" / "foo",
    )
    state.add_package("bar", "v0.3", tmp_path / "packages" / "bar" / "v0.3")
    state.save(tmp_path)
    loaded = PackageState.load(tmp_path)
    assert loaded == state
    assert {
        (name, p.version, p.install_path, p.executable_path)
        for name, p in loaded.list_packages()
    } == {
        (
            "foo",
            "1.2.0",
            tmp_path / "packages" / "foo" / "1.2.0",
            tmp_path / "packages" / "foo" / "1.2.0" / "foo",
        ),
        ("bar", "v0.3", tmp_path / "packages" / "bar" / "v0.3", None),
    }


def test_saved_document_layout(tmp_path: Path) -> None:
    state = PackageState()
    state.add_package("foo", "1.2.0", Path("/opt/foo"), Path("/opt/foo/foo"))
    state.add_package("bar", "2.0", Path("/opt/bar"))
    state.save(tmp_path)
    with (tmp_path / "package_state.json").open() as fp:
        doc = json.load(fp)
    assert doc == {
        "packages": {
            "bar": {
                "version": "2.0",
                "install_path": str(Path("/opt/bar")),
                "executable_path": None,
            },
            "foo": {
                "version": "1.2.0",
                "install_path": str(Path("/opt/foo")),
                "executable_path": str(Path("/opt/foo/foo")),
            },
        }
    }
    assert [p.name for p in tmp_path.iterdir()] == ["package_state.json"]


def test_load_without_executable_path(tmp_path: Path) -> None:
    (tmp_path / "package_state.json").write_text(
        json.dumps({"packages": {"foo": {"version": "1", "install_path": "/x"}}})
    )
    assert PackageState.load(tmp_path).get_package("foo") == InstalledPackage(
        version="1", install_path=Path("/x"), executable_path=None
    )


def test_add_package_overwrites(tmp_path: Path) -> None:
    state = PackageState()
    state.add_package("foo", "1.0", tmp_path / "1.0", tmp_path / "1.0" / "foo")
    state.add_package("foo", "2.0", tmp_path / "2.0")
    assert state.list_packages() == [
        ("foo", InstalledPackage(version="2.0", install_path=tmp_path / "2.0"))
    ]


def test_remove_get_list() -> None:
    state = PackageState()
    state.add_package("foo", "1.0", Path("/a"))
    state.add_package("bar", "2.0", Path("/b"))
    assert [name for name, _ in state.list_packages()] == ["bar", "foo"]
    assert state.get_package("foo") == InstalledPackage("1.0", Path("/a"))
    assert state.remove_package("foo") == InstalledPackage("1.0", Path("/a"))
    assert state.get_package("foo") is None
    assert state.remove_package("foo") is None
    assert [name for name, _ in state.list_packages()] == ["bar"]


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        '{"pkgs": {}}',
        '{"packages": {"foo": {"install_path": "/x"}}}',
        '{"packages": []}',
    ],
)
def test_load_malformed(tmp_path: Path, content: str) -> None:
    (tmp_path / "package_state.json").write_text(content)
    with pytest.raises(FilesystemError):
        PackageState.load(tmp_path)


def test_save_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    with pytest.raises(FilesystemError):
        PackageState().save(blocker / "data")
