import os

import pytest

from handbuilt.errors import CommandFailed, MissingDependency, SourceFetchFailure, ValidationFailure
from handbuilt.sources import SourceResolver, SourceSpec


def make_tree(path, marker):
    path.mkdir(parents=True)
    (path / "Makefile").write_text(marker, encoding="utf-8")
    return str(path)


def leftovers(resolver, source):
    parent = os.path.dirname(resolver.cacheEntry(source))
    return [name for name in os.listdir(parent) if ".partial-" in name]


def test_fetch_populates_cache_from_primary(tmp_path):
    primary = make_tree(tmp_path / "primary", "primary")
    resolver = SourceResolver(str(tmp_path / "cache"))
    source = SourceSpec("kernel", "6.1", "directory", primary)

    path = resolver.resolve(source)

    assert path == resolver.cacheEntry(source)
    assert open(os.path.join(path, "Makefile")).read() == "primary"
    assert resolver.isCached(source)


def test_cached_entry_is_reused_without_fetching(tmp_path):
    primary = tmp_path / "primary"
    resolver = SourceResolver(str(tmp_path / "cache"))
    source = SourceSpec("kernel", "6.1", "directory", make_tree(primary, "primary"))
    first = resolver.resolve(source)

    (primary / "Makefile").unlink()
    primary.rmdir()

    assert resolver.resolve(source) == first


def test_versions_have_separate_cache_entries(tmp_path):
    resolver = SourceResolver(str(tmp_path / "cache"))
    old = resolver.resolve(SourceSpec("kernel", "6.1", "directory", make_tree(tmp_path / "old", "old")))
    new = resolver.resolve(SourceSpec("kernel", "6.2", "directory", make_tree(tmp_path / "new", "new")))

    assert old != new
    assert open(os.path.join(old, "Makefile")).read() == "old"
    assert open(os.path.join(new, "Makefile")).read() == "new"


def test_fallback_is_used_when_primary_fails(tmp_path):
    fallback = make_tree(tmp_path / "mirror", "mirror")
    resolver = SourceResolver(str(tmp_path / "cache"))
    source = SourceSpec("userspace", "1.36", "directory", str(tmp_path / "missing"), fallback)

    path = resolver.resolve(source)

    assert open(os.path.join(path, "Makefile")).read() == "mirror"
    assert leftovers(resolver, source) == []


def test_both_locations_failing_raises_and_leaves_no_entry(tmp_path):
    resolver = SourceResolver(str(tmp_path / "cache"))
    source = SourceSpec("bootloader", "6.03", "directory", str(tmp_path / "a"), str(tmp_path / "b"))

    with pytest.raises(SourceFetchFailure) as excinfo:
        resolver.resolve(source)

    assert "bootloader" in str(excinfo.value)
    assert not resolver.isCached(source)
    assert leftovers(resolver, source) == []


def test_partial_primary_clone_is_discarded_before_fallback(tmp_path):
    commands = []

    def execute(cmd, checkValid=True):
        commands.append(cmd)
        target = cmd[-1]
        with open(os.path.join(target, "half-written"), "w") as f:
            f.write("partial")
        if cmd[-2] == "https://primary.invalid/linux.git":
            raise CommandFailed(cmd, 128, "connection reset")
        with open(os.path.join(target, "Makefile"), "w") as f:
            f.write("complete")

    resolver = SourceResolver(str(tmp_path / "cache"), execute)
    source = SourceSpec("kernel", "v6.1", "git", "https://primary.invalid/linux.git", "https://mirror.invalid/linux.git")

    path = resolver.resolve(source)

    assert len(commands) == 2
    assert commands[0][:6] == ["git", "clone", "--depth", "1", "--branch", "v6.1"]
    assert sorted(os.listdir(path)) == ["Makefile", "half-written"]
    assert open(os.path.join(path, "Makefile")).read() == "complete"
    assert leftovers(resolver, source) == []


def test_missing_tool_is_not_treated_as_fetch_failure(tmp_path):
    def execute(cmd, checkValid=True):
        raise MissingDependency(f"Command not found: {cmd[0]}")

    resolver = SourceResolver(str(tmp_path / "cache"), execute)
    source = SourceSpec("kernel", "v6.1", "git", "https://primary.invalid/linux.git")

    with pytest.raises(MissingDependency):
        resolver.resolve(source)


def test_tarball_fetch_downloads_and_extracts(tmp_path):
    commands = []

    def execute(cmd, checkValid=True):
        commands.append(cmd)
        if cmd[0] == "wget":
            with open(cmd[3], "wb") as f:
                f.write(b"archive")
        else:
            target = cmd[cmd.index("-C") + 1]
            os.makedirs(os.path.join(target, "bios", "core"))

    resolver = SourceResolver(str(tmp_path / "cache"), execute)
    source = SourceSpec("bootloader", "6.03", "tarball", "https://example.invalid/syslinux-6.03.tar.gz")

    path = resolver.resolve(source)

    assert [cmd[0] for cmd in commands] == ["wget", "tar"]
    assert "--strip-components=1" in commands[1]
    assert os.listdir(path) == ["bios"]


def test_resolve_into_work_dir_copies_the_cache_entry(tmp_path):
    resolver = SourceResolver(str(tmp_path / "cache"))
    source = SourceSpec("kernel", "6.1", "directory", make_tree(tmp_path / "primary", "primary"))

    work = resolver.resolve(source, str(tmp_path / "work"))
    with open(os.path.join(work, "Makefile"), "w") as f:
        f.write("modified by a build")

    assert work == os.path.join(str(tmp_path / "work"), "kernel")
    assert open(os.path.join(resolver.cacheEntry(source), "Makefile")).read() == "primary"


def test_unknown_source_kind_is_rejected(tmp_path):
    resolver = SourceResolver(str(tmp_path / "cache"))

    with pytest.raises(ValidationFailure):
        resolver.resolve(SourceSpec("kernel", "6.1", "svn", "svn://example.invalid"))


def test_source_spec_from_project_entry():
    source = SourceSpec.fromProject("bootloader", {"version": 6.03, "kind": "tarball", "primary": "a", "fallback": "b"})

    assert source.version == "6.03"
    assert source.locations == ["a", "b"]
