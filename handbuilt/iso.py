import os
import shutil

from .artifacts import validateArtifact
from .buildlog import logInfo, logSuccess
from .errors import MissingDependency, ValidationFailure
from .stages import BOOTLOADER_BINARY, ISO_IMAGE, Artifact
from .utils import buildExecute, deleteDirectory, pathConcat

# files taken from a built syslinux tree, relative to its root
ISOLINUX_FILES = {
    "isolinux.bin": os.path.join("bios", "core", "isolinux.bin"),
    "ldlinux.c32": os.path.join("bios", "com32", "elflink", "ldlinux", "ldlinux.c32")
}

ISOLINUX_DIR = "isolinux"
KERNEL_NAME = "bzImage"
INITRAMFS_NAME = "initramfs"
CONFIG_NAME = "isolinux.cfg"

MASTERING_TOOLS = [
    ["mkisofs"],
    ["genisoimage"],
    ["xorriso", "-as", "mkisofs"]
]


def findMasteringTool():
    for tool in MASTERING_TOOLS:
        if shutil.which(tool[0]):
            return tool
    raise MissingDependency(f"No ISO mastering tool found (tried {', '.join(tool[0] for tool in MASTERING_TOOLS)})")


def requireInput(path, description):
    if not path or not os.path.isfile(path) or os.path.getsize(path) == 0:
        raise ValidationFailure(f"{description} not found or empty: {path}")


def stageIsoTree(stagingDir, kernel, initramfs, bootloaderDir, bootloaderConfig):
    """Lay out the directory structure isolinux expects and return the staging dir."""
    requireInput(kernel, "Kernel image")
    requireInput(initramfs, "Initramfs")
    requireInput(bootloaderConfig, "Bootloader configuration")
    bootloaderFiles = {name: pathConcat(bootloaderDir, rel) for name, rel in ISOLINUX_FILES.items()}
    for name, path in bootloaderFiles.items():
        requireInput(path, f"Bootloader file {name}")

    deleteDirectory(stagingDir)
    isolinuxDir = os.path.join(stagingDir, ISOLINUX_DIR)
    os.makedirs(isolinuxDir)

    shutil.copyfile(kernel, os.path.join(stagingDir, KERNEL_NAME))
    shutil.copyfile(initramfs, os.path.join(stagingDir, INITRAMFS_NAME))
    for name, path in bootloaderFiles.items():
        shutil.copyfile(path, os.path.join(isolinuxDir, name))
    shutil.copyfile(bootloaderConfig, os.path.join(isolinuxDir, CONFIG_NAME))

    return stagingDir


def assembleIso(stagingDir, outputPath, execute=buildExecute, tool=None):
    for rel in (KERNEL_NAME, INITRAMFS_NAME, os.path.join(ISOLINUX_DIR, "isolinux.bin"), os.path.join(ISOLINUX_DIR, CONFIG_NAME)):
        requireInput(os.path.join(stagingDir, rel), rel)

    if tool is None:
        tool = findMasteringTool()

    logInfo(f"Creating bootable ISO: {outputPath}")
    if os.path.exists(outputPath):
        os.remove(outputPath)

    execute(tool + [
        "-J",
        "-R",
        "-o", outputPath,
        "-b", f"{ISOLINUX_DIR}/isolinux.bin",
        "-c", f"{ISOLINUX_DIR}/boot.cat",
        "-no-emul-boot",
        "-boot-load-size", "4",
        "-boot-info-table",
        stagingDir
    ])

    artifact = validateArtifact(outputPath, ISO_IMAGE)
    logSuccess(f"ISO created: {outputPath}")
    return artifact


def bootloaderBinary(stagingDir):
    return Artifact.fromPath(BOOTLOADER_BINARY, os.path.join(stagingDir, ISOLINUX_DIR, "isolinux.bin"))
