"""Export finished artifacts to the host and check their binary signatures."""
import os
import shutil

from .buildlog import logInfo, logSuccess, logVerbose
from .errors import MissingDependency, ValidationFailure
from .stages import (ARTIFACT_KINDS, BOOTLOADER_BINARY, INITRAMFS_ARCHIVE, ISO_IMAGE,
                     KERNEL_IMAGE, RAW_DISK_IMAGE, Artifact)

EXPORT_NAMES = {
    ISO_IMAGE: "output.iso",
    KERNEL_IMAGE: "bzImage",
    INITRAMFS_ARCHIVE: "initramfs",
    BOOTLOADER_BINARY: "isolinux.bin",
    RAW_DISK_IMAGE: "boot.img"
}

DEFAULT_EXPORTS = [ISO_IMAGE, KERNEL_IMAGE, INITRAMFS_ARCHIVE]

# (offset, expected bytes)
SIGNATURES = {
    INITRAMFS_ARCHIVE: [(0, b"\x1f\x8b")],
    KERNEL_IMAGE: [(0x202, b"HdrS")],
    RAW_DISK_IMAGE: [(510, b"\x55\xaa")],
    ISO_IMAGE: [(0x8001, b"CD001")],
    BOOTLOADER_BINARY: []
}

ISO_SECTOR = 2048
ISO_FIRST_DESCRIPTOR = 16
ISO_DESCRIPTOR_BOOT_RECORD = 0
ISO_DESCRIPTOR_TERMINATOR = 255
EL_TORITO_ID = b"EL TORITO SPECIFICATION"


def readAt(f, offset, length):
    f.seek(offset)
    return f.read(length)


def hasBootRecord(f):
    """Walk the ISO 9660 volume descriptor set looking for an El Torito boot record."""
    sector = ISO_FIRST_DESCRIPTOR
    while True:
        descriptor = readAt(f, sector * ISO_SECTOR, 7 + len(EL_TORITO_ID))
        if len(descriptor) < 7 or descriptor[1:6] != b"CD001":
            return False
        if descriptor[0] == ISO_DESCRIPTOR_TERMINATOR:
            return False
        if descriptor[0] == ISO_DESCRIPTOR_BOOT_RECORD and descriptor[7:].startswith(EL_TORITO_ID):
            return True
        sector += 1


def validateArtifact(path, kind):
    if kind not in SIGNATURES:
        raise ValidationFailure(f"Unknown artifact kind: {kind}")

    if not os.path.isfile(path):
        raise ValidationFailure(f"{kind} not found: {path}")
    if os.path.getsize(path) == 0:
        raise ValidationFailure(f"{kind} is empty: {path}")

    with open(path, "rb") as f:
        for offset, expected in SIGNATURES[kind]:
            if readAt(f, offset, len(expected)) != expected:
                raise ValidationFailure(f"{path} is not a valid {kind}: expected {expected!r} at offset {offset:#x}")

        if kind == ISO_IMAGE and not hasBootRecord(f):
            raise ValidationFailure(f"{path} has no El Torito boot record")

    logVerbose(f"{kind} signature ok: {path}")
    return Artifact.fromPath(kind, path)


def exportArtifacts(context, kinds, outputDir):
    """Copy each requested artifact kind from the build context to ``outputDir``."""
    exported = []
    for kind in kinds:
        if kind not in ARTIFACT_KINDS:
            raise ValidationFailure(f"Unknown artifact kind: {kind}")

        artifact = context.artifacts.get(kind)
        if artifact is None or not os.path.isfile(artifact.path):
            raise MissingDependency(f"{kind} was never produced, nothing to export")

        os.makedirs(outputDir, exist_ok=True)
        target = os.path.join(outputDir, EXPORT_NAMES[kind])
        logInfo(f"Exporting {kind}: {target}")
        shutil.copy2(artifact.path, target)
        exported.append(Artifact.fromPath(kind, target, withChecksum=True))

    if exported:
        logSuccess(f"All artifacts exported to {outputDir}")
    return exported
