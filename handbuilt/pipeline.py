"""The fixed stage registry that turns sources into a bootable ISO.

fetch-sources -> build-kernel ------------------------------> assemble-iso
              -> build-userspace -> assemble-initramfs ------^
"""
import os
import shutil
from functools import partial

from .config import SOURCE_NAMES
from .errors import MissingInputFile
from .initramfs import assembleInitramfs
from .iso import assembleIso, bootloaderBinary, stageIsoTree
from .sources import SourceResolver, SourceSpec
from .stages import (BOOTLOADER_BINARY, INITRAMFS_ARCHIVE, ISO_IMAGE, KERNEL_IMAGE, BuildStage)
from .utils import buildExecute, fileChecksum

FETCH_SOURCES = "fetch-sources"
BUILD_KERNEL = "build-kernel"
BUILD_USERSPACE = "build-userspace"
ASSEMBLE_INITRAMFS = "assemble-initramfs"
ASSEMBLE_ISO = "assemble-iso"

KERNEL_IMAGE_PATH = os.path.join("arch", "x86", "boot", "bzImage")


def projectPath(project, key):
    return os.path.join(project.get("_root", "."), project[key])


def requireProjectFile(project, key):
    path = projectPath(project, key)
    if not os.path.isfile(path):
        raise MissingInputFile(f"{key} not found: {path}")
    return path


def optionalChecksum(path):
    if os.path.isfile(path):
        return fileChecksum(path)
    return None


def fetchSources(context, stage, execute=buildExecute):
    stageDir = context.stageDir(stage.name, fresh=True)
    resolver = SourceResolver(context.cacheDir, execute)

    outputs = {}
    for name in SOURCE_NAMES:
        source = SourceSpec.fromProject(name, context.project["sources"][name])
        outputs[name] = resolver.resolve(source, stageDir)
    return outputs


def buildKernel(context, stage, execute=buildExecute):
    source = context.output(FETCH_SOURCES, "kernel")
    config = requireProjectFile(context.project, "kernel-config")
    stageDir = context.stageDir(stage.name, fresh=True)
    build = os.path.join(stageDir, "build")
    os.makedirs(build)

    shutil.copyfile(config, os.path.join(build, ".config"))
    make = ["make", "-C", source, f"O={os.path.abspath(build)}"]
    execute(make + ["olddefconfig"])
    execute(make + [f"-j{context.project['jobs']}"])

    image = os.path.join(stageDir, "bzImage")
    shutil.copyfile(os.path.join(build, KERNEL_IMAGE_PATH), image)
    execute(["strip", "--strip-debug", image], checkValid=False)
    return {KERNEL_IMAGE: image}


def buildUserspace(context, stage, execute=buildExecute):
    source = context.output(FETCH_SOURCES, "userspace")
    config = requireProjectFile(context.project, "userspace-config")
    stageDir = context.stageDir(stage.name, fresh=True)
    build = os.path.join(stageDir, "build")
    rootfs = os.path.join(stageDir, "rootfs")
    os.makedirs(build)

    shutil.copyfile(config, os.path.join(build, ".config"))
    make = ["make", "-C", source, f"O={os.path.abspath(build)}"]
    execute(make + ["oldconfig"])
    execute(make + [f"-j{context.project['jobs']}"])
    execute(make + [f"CONFIG_PREFIX={os.path.abspath(rootfs)}", "install"])
    execute(["strip", os.path.join(rootfs, "bin", "busybox")], checkValid=False)
    return {"rootfs": rootfs}


def assembleInitramfsStage(context, stage, execute=buildExecute):
    source = context.output(BUILD_USERSPACE, "rootfs")
    initScript = requireProjectFile(context.project, "init-script")
    stageDir = context.stageDir(stage.name, fresh=True)

    rootfs = os.path.join(stageDir, "rootfs")
    shutil.copytree(source, rootfs, symlinks=True)
    artifact = assembleInitramfs(rootfs, os.path.join(stageDir, "initramfs.cpio.gz"), initScript)
    return {INITRAMFS_ARCHIVE: artifact.path}


def assembleIsoStage(context, stage, execute=buildExecute):
    stageDir = context.stageDir(stage.name, fresh=True)
    staging = stageIsoTree(
        os.path.join(stageDir, "myiso"),
        context.artifact(KERNEL_IMAGE).path,
        context.artifact(INITRAMFS_ARCHIVE).path,
        context.output(FETCH_SOURCES, "bootloader"),
        requireProjectFile(context.project, "bootloader-config")
    )
    iso = assembleIso(staging, os.path.join(stageDir, "output.iso"), execute)
    return {ISO_IMAGE: iso.path, BOOTLOADER_BINARY: bootloaderBinary(staging).path}


def defaultStages(project, execute=buildExecute):
    return [
        BuildStage(
            FETCH_SOURCES,
            partial(fetchSources, execute=execute),
            cacheKey={"sources": project["sources"]}
        ),
        BuildStage(
            BUILD_KERNEL,
            partial(buildKernel, execute=execute),
            depends=[FETCH_SOURCES],
            produces=[KERNEL_IMAGE],
            cacheKey={"config": optionalChecksum(projectPath(project, "kernel-config"))}
        ),
        BuildStage(
            BUILD_USERSPACE,
            partial(buildUserspace, execute=execute),
            depends=[FETCH_SOURCES],
            cacheKey={"config": optionalChecksum(projectPath(project, "userspace-config"))}
        ),
        BuildStage(
            ASSEMBLE_INITRAMFS,
            partial(assembleInitramfsStage, execute=execute),
            depends=[BUILD_USERSPACE],
            produces=[INITRAMFS_ARCHIVE],
            cacheKey={"init": optionalChecksum(projectPath(project, "init-script"))}
        ),
        BuildStage(
            ASSEMBLE_ISO,
            partial(assembleIsoStage, execute=execute),
            depends=[BUILD_KERNEL, ASSEMBLE_INITRAMFS, FETCH_SOURCES],
            produces=[ISO_IMAGE, BOOTLOADER_BINARY],
            cacheKey={"config": optionalChecksum(projectPath(project, "bootloader-config"))}
        )
    ]
