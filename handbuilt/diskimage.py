"""Bootable FAT disk image builder.

The build walks a fixed sequence of states::

    Idle -> Validated -> ImageCreated -> Formatted -> BootloaderInstalled
         -> Mounted -> FilesCopied -> Unmounted

Any error or termination signal moves the builder to Failed through a single
cleanup path: an image this builder mounted is unmounted and an empty mount
point directory is removed. The mount itself is held in a context manager so
release happens exactly once on every exit path.
"""
import os
import re
import math
import enum
import fcntl
import signal
import shutil
import hashlib
import tempfile
import threading
from contextlib import contextmanager, ExitStack
from dataclasses import dataclass, field

from .buildlog import logInfo, logSuccess, logVerbose, logWarning
from .errors import (BuildError, BuildInterrupted, CapacityExceeded, MissingInputFile, MountFailure,
                     ResourceBusy, UserAborted, ValidationFailure)
from .stages import RAW_DISK_IMAGE, Artifact
from .utils import MEGABYTE, buildExecute, calcSize, deleteFile, requireCommands

FAT_TYPES = ["fat", "vfat", "msdos"]

KERNEL_NAME = "bzImage"
INITRAMFS_NAME = "initramfs"
CONFIG_NAME = "syslinux.cfg"

CLUSTER_SIZE = 4096
RESERVED_SIZE = 32 * 1024
# ldlinux.sys and ldlinux.c32 written by syslinux
BOOTLOADER_RESERVE = 256 * 1024

INTERRUPT_SIGNALS = [signal.SIGINT, signal.SIGTERM, signal.SIGHUP]


class DiskState(enum.Enum):
    IDLE = "Idle"
    VALIDATED = "Validated"
    IMAGE_CREATED = "ImageCreated"
    FORMATTED = "Formatted"
    BOOTLOADER_INSTALLED = "BootloaderInstalled"
    MOUNTED = "Mounted"
    FILES_COPIED = "FilesCopied"
    UNMOUNTED = "Unmounted"
    CLEANUP = "Cleanup"
    FAILED = "Failed"


@dataclass
class PayloadFile:
    source: str
    destination: str


@dataclass
class DiskImageSpec:
    sizeMB: int = 50
    output: str = "boot.img"
    payload: list = field(default_factory=list)
    fsType: str = "fat"
    mountPoint: str = "mnt"
    force: bool = False

    @classmethod
    def forBoot(cls, kernel, initrd, config, **kwargs):
        payload = [
            PayloadFile(kernel, KERNEL_NAME),
            PayloadFile(initrd, INITRAMFS_NAME),
            PayloadFile(config, CONFIG_NAME)
        ]
        return cls(payload=payload, **kwargs)

    @property
    def sizeBytes(self):
        return self.sizeMB * MEGABYTE


def imageSizeMB(sizeLitteral, payloadPaths):
    """Plain numbers are megabytes; unit literals and ``auto`` expressions are bytes."""
    try:
        sizeMB = float(sizeLitteral)
    except ValueError:
        return math.ceil(calcSize(sizeLitteral, list(payloadPaths)) / MEGABYTE)

    if not math.isfinite(sizeMB):
        raise ValidationFailure(f"Image size must be a finite number, got {sizeLitteral}")
    return math.ceil(sizeMB)


def usableCapacity(sizeBytes):
    clusters = sizeBytes // CLUSTER_SIZE
    fatTables = 2 * clusters * 4
    return max(0, sizeBytes - RESERVED_SIZE - fatTables - BOOTLOADER_RESERVE)


def payloadFootprint(paths):
    return sum(math.ceil(os.path.getsize(path) / CLUSTER_SIZE) * CLUSTER_SIZE for path in paths)


def unescapeMountPath(path):
    return re.sub(r"\\([0-7]{3})", lambda match: chr(int(match.group(1), 8)), path)


def readMounts(mountsFile="/proc/self/mounts"):
    if not os.path.exists(mountsFile):
        return None
    with open(mountsFile, encoding="utf-8", errors="surrogateescape") as f:
        return [unescapeMountPath(line.split()[1]) for line in f if line.strip()]


class DiskTools:
    """External commands used by the builder; tests substitute a fake."""

    requiredCommands = ["dd", "mkfs.fat", "syslinux", "mount", "umount"]

    def __init__(self, execute=buildExecute):
        self.execute = execute

    def checkDependencies(self):
        requireCommands(self.requiredCommands)

    def allocate(self, path, sizeBytes):
        logVerbose(f"Allocating file with size {sizeBytes}: {path}")
        self.execute([
            "dd",
            "if=/dev/zero",
            f"of={path}",
            "bs=" + str(MEGABYTE),
            "count=" + str(math.ceil(sizeBytes / MEGABYTE))
        ])

    def format(self, path, fsType):
        self.execute([f"mkfs.{fsType}", path])

    def installBootloader(self, path):
        self.execute(["syslinux", "--install", path])

    def mount(self, path, mountPoint):
        self.execute(["mount", "-o", "loop", path, mountPoint])

    def umount(self, mountPoint):
        self.execute(["umount", mountPoint])

    def isMounted(self, mountPoint):
        mountPoint = os.path.realpath(mountPoint)
        mounts = readMounts()
        if mounts is None:
            return os.path.ismount(mountPoint)
        return mountPoint in mounts

    def copyFile(self, source, target):
        shutil.copyfile(source, target)


def lockPath(lockDir, role, path):
    digest = hashlib.md5(os.path.realpath(path).encode("utf-8")).hexdigest()
    return os.path.join(lockDir, f"{role}-{digest}.lock")


@contextmanager
def exclusiveLock(path, error):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        try:
            fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise error
        try:
            yield
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)


def askOverwrite(path):
    try:
        reply = input(f"Output file already exists: {path}. Overwrite? (y/N): ")
    except EOFError:
        return False
    return reply.strip().lower() in ("y", "yes")


class DiskImageBuilder:
    def __init__(self, spec, tools=None, confirm=askOverwrite, lockDir=None):
        self.spec = spec
        self.tools = tools or DiskTools()
        self.confirm = confirm
        self.lockDir = lockDir or os.path.join(tempfile.gettempdir(), "handbuilt-locks")
        self.state = DiskState.IDLE
        self.history = [DiskState.IDLE]
        self.mountAttempted = False
        self.mounted = False
        self.interrupted = None

    def setState(self, state):
        logVerbose(f"State: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    # ------------------------------------------------ states

    def validateInputs(self):
        if self.spec.fsType not in FAT_TYPES:
            raise ValidationFailure(f"Unsupported filesystem {self.spec.fsType}, the bootloader needs one of: {', '.join(FAT_TYPES)}")
        if self.spec.sizeMB <= 0:
            raise ValidationFailure(f"Image size must be positive, got {self.spec.sizeMB}MB")

        names = [payload.destination for payload in self.spec.payload]
        if len(set(names)) != len(names):
            raise ValidationFailure(f"Duplicate destination names: {names}")

        for payload in self.spec.payload:
            if not payload.destination or os.path.basename(payload.destination) != payload.destination:
                raise ValidationFailure(f"Destination must be a plain file name: {payload.destination}")
            if not os.path.isfile(payload.source):
                raise MissingInputFile(f"{payload.destination} source not found: {payload.source}")
            if os.path.getsize(payload.source) == 0:
                raise MissingInputFile(f"{payload.destination} source is empty: {payload.source}")
            logVerbose(f"{payload.destination} found: {payload.source}")

        self.checkCapacity()
        self.setState(DiskState.VALIDATED)

    def checkCapacity(self):
        needed = payloadFootprint([payload.source for payload in self.spec.payload])
        capacity = usableCapacity(self.spec.sizeBytes)
        logVerbose(f"Payload {needed} bytes, usable capacity {capacity} bytes")
        if needed > capacity:
            raise CapacityExceeded(f"Payload needs {needed} bytes but a {self.spec.sizeMB}MB image holds only {capacity}")

    def createImage(self):
        output = self.spec.output
        logInfo(f"Creating {self.spec.sizeMB}MB disk image: {output}...")

        if os.path.exists(output):
            logWarning(f"Output file already exists: {output}")
            if not self.spec.force and not self.confirm(output):
                raise UserAborted(f"Not overwriting {output}")
            deleteFile(output)

        parent = os.path.dirname(os.path.abspath(output))
        os.makedirs(parent, exist_ok=True)
        self.tools.allocate(output, self.spec.sizeBytes)
        self.setState(DiskState.IMAGE_CREATED)
        logSuccess("Disk image created")

    def formatImage(self):
        logInfo(f"Formatting disk image with {self.spec.fsType} filesystem...")
        self.tools.format(self.spec.output, self.spec.fsType)
        self.setState(DiskState.FORMATTED)
        logSuccess("Disk image formatted")

    def installBootloader(self):
        logInfo("Installing Syslinux bootloader...")
        self.tools.installBootloader(self.spec.output)
        self.setState(DiskState.BOOTLOADER_INSTALLED)
        logSuccess("Bootloader installed")

    def mountImage(self):
        mountPoint = self.spec.mountPoint
        logInfo("Mounting disk image...")

        if os.path.isdir(mountPoint):
            if self.tools.isMounted(mountPoint):
                raise MountFailure(f"Mount point already in use: {mountPoint}")
        elif os.path.exists(mountPoint):
            raise MountFailure(f"Mount point is not a directory: {mountPoint}")
        else:
            os.makedirs(mountPoint)

        self.mountAttempted = True
        try:
            self.tools.mount(self.spec.output, mountPoint)
        except BuildInterrupted:
            raise
        except BuildError as e:
            raise MountFailure(f"Failed to mount {self.spec.output} at {mountPoint}: {e}") from e
        self.mounted = True
        self.setState(DiskState.MOUNTED)
        logSuccess(f"Disk image mounted at {mountPoint}")

    def copyPayload(self):
        logInfo("Copying files to disk image...")
        for payload in self.spec.payload:
            logVerbose(f"Copying {payload.destination}: {payload.source}")
            self.tools.copyFile(payload.source, os.path.join(self.spec.mountPoint, payload.destination))
        self.setState(DiskState.FILES_COPIED)
        logSuccess("Files copied successfully")

    # ------------------------------------------------ release

    def release(self, strict):
        """Unmount what this builder mounted and drop an empty mount point.

        With ``strict`` an unmount failure is raised, otherwise it is logged so
        the error that triggered cleanup keeps propagating.
        """
        mountPoint = self.spec.mountPoint
        needsUmount = self.mounted or (self.mountAttempted and self.tools.isMounted(mountPoint))
        if needsUmount:
            logInfo(f"Unmounting {mountPoint}...")
            try:
                self.tools.umount(mountPoint)
            except BuildInterrupted:
                raise
            except BuildError as e:
                if strict:
                    raise MountFailure(f"Failed to unmount {mountPoint}: {e}") from e
                logWarning(f"Failed to unmount {mountPoint}: {e}")
                return
            self.mounted = False
            self.mountAttempted = False

        if os.path.isdir(mountPoint) and not self.tools.isMounted(mountPoint):
            try:
                os.rmdir(mountPoint)
            except OSError:
                logVerbose("Mount point not removed (may not be empty)")

    @contextmanager
    def mountedImage(self):
        self.mountImage()
        try:
            yield self.spec.mountPoint
        except BaseException:
            self.release(strict=False)
            raise
        self.release(strict=True)
        self.setState(DiskState.UNMOUNTED)
        logSuccess("Disk image unmounted")

    def cleanup(self):
        logVerbose("Running cleanup...")
        self.setState(DiskState.CLEANUP)
        self.release(strict=False)
        self.setState(DiskState.FAILED)

    # ------------------------------------------------ interruption and locking

    def onSignal(self, signum, frame):
        if self.interrupted is not None or self.state == DiskState.CLEANUP:
            logWarning(f"Signal {signum} received during cleanup, ignoring")
            return
        self.interrupted = signum
        raise BuildInterrupted(signum)

    @contextmanager
    def signalsAsErrors(self):
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        previous = {}
        for signum in INTERRUPT_SIGNALS:
            previous[signum] = signal.signal(signum, self.onSignal)
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    def exclusive(self):
        stack = ExitStack()
        try:
            stack.enter_context(exclusiveLock(
                lockPath(self.lockDir, "mount", self.spec.mountPoint),
                MountFailure(f"Mount point {self.spec.mountPoint} is in use by another builder")
            ))
            stack.enter_context(exclusiveLock(
                lockPath(self.lockDir, "output", self.spec.output),
                ResourceBusy(f"Output {self.spec.output} is being built by another builder")
            ))
        except BaseException:
            stack.close()
            raise
        return stack

    # ------------------------------------------------ pipeline

    def build(self):
        self.tools.checkDependencies()

        with self.exclusive(), self.signalsAsErrors():
            try:
                self.validateInputs()
                self.createImage()
                self.formatImage()
                self.installBootloader()
                with self.mountedImage():
                    self.copyPayload()
            except BaseException:
                self.cleanup()
                raise

        return Artifact.fromPath(RAW_DISK_IMAGE, self.spec.output)
