import os

import json5
import pytest

from handbuilt import cli, iso, pipeline
from handbuilt.artifacts import DEFAULT_EXPORTS, exportArtifacts, validateArtifact
from handbuilt.config import loadProject
from handbuilt.errors import MissingInputFile, StageFailure
from handbuilt.stages import (BUILT, CACHED, INITRAMFS_ARCHIVE, ISO_IMAGE, KERNEL_IMAGE, BuildContext,
                              StageExecutor)
from handbuilt.initramfs import listInitramfs


@pytest.fixture
def project_file(tmp_path):
    sources = tmp_path / "upstream"
    for name in ("linux", "busybox"):
        (sources / name).mkdir(parents=True)
        (sources / name / "Makefile").write_text(f"# {name}\n")
    syslinux = sources / "syslinux"
    (syslinux / "bios" / "core").mkdir(parents=True)
    (syslinux / "bios" / "com32" / "elflink" / "ldlinux").mkdir(parents=True)
    (syslinux / "bios" / "core" / "isolinux.bin").write_bytes(b"\xfa" * 432)
    (syslinux / "bios" / "com32" / "elflink" / "ldlinux" / "ldlinux.c32").write_bytes(b"\x7fELF" * 64)

    (tmp_path / "linux.config").write_text("CONFIG_64BIT=y\n")
    (tmp_path / "busybox.config").write_text("CONFIG_STATIC=y\n")
    (tmp_path / "init.sh").write_text("#!/bin/sh\nexec /bin/sh\n")
    (tmp_path / "syslinux.cfg").write_text("DEFAULT linux\n")

    project = {
        "sources": {
            "kernel": {"version": "6.1", "kind": "directory", "primary": str(sources / "linux")},
            "userspace": {"version": "1.36", "kind": "directory", "primary": str(sources / "busybox")},
            "bootloader": {"version": "6.03", "kind": "directory", "primary": str(tmp_path / "gone"), "fallback": str(syslinux)}
        },
        "jobs": 2
    }
    path = tmp_path / "handbuilt.json5"
    path.write_text(json5.dumps(project, indent=4), encoding="utf-8")
    return str(path)


class FakeToolchain:
    """Pretends to be make, strip and mkisofs, writing just enough for each stage."""

    def __init__(self, make_iso, tmp_path):
        self.make_iso = make_iso
        self.tmp_path = tmp_path
        self.commands = []

    def __call__(self, cmd, checkValid=True):
        self.commands.append(cmd)
        if cmd[0] == "make":
            self.make(cmd)
        elif cmd[0] == "mkisofs":
            output = cmd[cmd.index("-o") + 1]
            self.make_iso(self.tmp_path / "iso-scratch")
            os.replace(self.tmp_path / "iso-scratch", output)
        return ""

    def make(self, cmd):
        source = cmd[2]
        build = [part for part in cmd if part.startswith("O=")][0][2:]
        target = cmd[-1]
        if target.startswith("-j") and os.path.basename(source) == "kernel":
            image = os.path.join(build, pipeline.KERNEL_IMAGE_PATH)
            os.makedirs(os.path.dirname(image))
            with open(image, "wb") as f:
                f.write(b"\0" * 0x202 + b"HdrS" + b"\0" * 2048)
        elif target == "install":
            prefix = [part for part in cmd if part.startswith("CONFIG_PREFIX=")][0].split("=", 1)[1]
            os.makedirs(os.path.join(prefix, "bin"))
            with open(os.path.join(prefix, "bin", "busybox"), "wb") as f:
                f.write(b"\x7fELF" + b"\0" * 512)
            os.symlink("busybox", os.path.join(prefix, "bin", "sh"))


@pytest.fixture
def toolchain(tmp_path, make_iso, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(iso, "findMasteringTool", lambda: ["mkisofs"])
    return FakeToolchain(make_iso, tmp_path)


def run_pipeline(project, toolchain, **kwargs):
    context = BuildContext(workDir=project["work"], cacheDir=project["cache"], project=project)
    result = StageExecutor(pipeline.defaultStages(project, toolchain), context, **kwargs).run()
    return context, result


def test_full_pipeline_produces_bootable_artifacts(tmp_path, project_file, toolchain):
    project = loadProject(project_file)
    context, result = run_pipeline(project, toolchain)

    assert result.ok
    assert [stageResult.stage for stageResult in result.results][0] == pipeline.FETCH_SOURCES
    assert [stageResult.stage for stageResult in result.results][-1] == pipeline.ASSEMBLE_ISO

    exported = exportArtifacts(context, DEFAULT_EXPORTS, str(tmp_path / "output"))
    for artifact in exported:
        validateArtifact(artifact.path, artifact.kind)

    names = {entry.name for entry in listInitramfs(context.artifact(INITRAMFS_ARCHIVE).path)}
    assert {"init", "bin/busybox", "bin/sh"} <= names
    assert sorted(os.listdir(tmp_path / "output")) == ["bzImage", "initramfs", "output.iso"]


def test_kernel_build_is_out_of_tree_with_project_config(project_file, toolchain):
    project = loadProject(project_file)
    context, result = run_pipeline(project, toolchain)

    kernelBuilds = [cmd for cmd in toolchain.commands if cmd[0] == "make" and os.path.basename(cmd[2]) == "kernel"]
    assert [cmd[-1] for cmd in kernelBuilds] == ["olddefconfig", "-j2"]
    build = kernelBuilds[0][3][2:]
    assert open(os.path.join(build, ".config")).read() == "CONFIG_64BIT=y\n"
    assert context.artifact(KERNEL_IMAGE).path.startswith(os.path.abspath(project["work"]))


def test_second_run_reuses_every_stage(project_file, toolchain):
    run_pipeline(loadProject(project_file), toolchain)
    count = len(toolchain.commands)

    context, result = run_pipeline(loadProject(project_file), toolchain)

    assert len(toolchain.commands) == count
    assert all(stageResult.status == CACHED for stageResult in result.results)
    validateArtifact(context.artifact(ISO_IMAGE).path, ISO_IMAGE)


def test_changed_init_script_rebuilds_initramfs_and_iso_only(tmp_path, project_file, toolchain):
    run_pipeline(loadProject(project_file), toolchain)
    (tmp_path / "init.sh").write_text("#!/bin/sh\necho changed\nexec /bin/sh\n")

    context, result = run_pipeline(loadProject(project_file), toolchain)

    assert result.result(pipeline.BUILD_KERNEL).status == CACHED
    assert result.result(pipeline.BUILD_USERSPACE).status == CACHED
    assert result.result(pipeline.ASSEMBLE_INITRAMFS).status == BUILT
    assert result.result(pipeline.ASSEMBLE_ISO).status == BUILT


def test_parallel_pipeline_matches_sequential(project_file, toolchain):
    context, result = run_pipeline(loadProject(project_file), toolchain, jobs=2)

    assert result.ok
    validateArtifact(context.artifact(ISO_IMAGE).path, ISO_IMAGE)


def test_missing_kernel_config_fails_the_kernel_stage(tmp_path, project_file, toolchain):
    os.remove(tmp_path / "linux.config")

    with pytest.raises(StageFailure) as excinfo:
        run_pipeline(loadProject(project_file), toolchain)

    assert excinfo.value.stage == pipeline.BUILD_KERNEL
    assert isinstance(excinfo.value.cause, MissingInputFile)


def test_build_command_exports_and_validates(tmp_path, project_file, toolchain, monkeypatch, capsys):
    monkeypatch.setattr(cli, "defaultStages", lambda project: pipeline.defaultStages(project, toolchain))

    assert cli.pipelineMain(["build", "--project", project_file, "--parallel-stages", "2"]) == 0

    out = capsys.readouterr().out
    assert "Build completed successfully!" in out
    assert sorted(os.listdir(tmp_path / "output")) == ["bzImage", "initramfs", "output.iso"]
    assert os.listdir(tmp_path / ".temp" / "logs")


def test_build_command_with_stage_target_exports_what_was_built(tmp_path, project_file, toolchain, monkeypatch):
    monkeypatch.setattr(cli, "defaultStages", lambda project: pipeline.defaultStages(project, toolchain))

    assert cli.pipelineMain(["build", "-p", project_file, "--stage", pipeline.BUILD_KERNEL, "-o", "kernel-only"]) == 0

    assert os.listdir(tmp_path / "kernel-only") == ["bzImage"]
    assert not any(cmd[0] == "mkisofs" for cmd in toolchain.commands)


def test_build_command_failure_exits_one(tmp_path, project_file, toolchain, monkeypatch, capsys):
    monkeypatch.setattr(cli, "defaultStages", lambda project: pipeline.defaultStages(project, toolchain))
    os.remove(tmp_path / "busybox.config")

    assert cli.pipelineMain(["build", "-p", project_file, "--keep-going"]) == 1

    err = capsys.readouterr().err
    assert "build-userspace" in err
    assert (tmp_path / ".temp" / "build" / "stages" / pipeline.BUILD_KERNEL / "bzImage").exists()
