"""Pack a root filesystem tree into a gzip-compressed newc cpio archive."""
import os
import gzip
import stat
import shutil
from dataclasses import dataclass
from typing import Optional

from .buildlog import logInfo, logVerbose
from .errors import MissingInputFile, ValidationFailure
from .stages import INITRAMFS_ARCHIVE, Artifact
from .utils import makeExecutable

NEWC_MAGIC = b"070701"
HEADER_SIZE = 110
TRAILER = "TRAILER!!!"
INIT_NAME = "init"


@dataclass
class CpioEntry:
    name: str
    mode: int
    uid: int
    gid: int
    size: int
    linkTarget: Optional[str] = None


def encodeHeader(ino, mode, uid, gid, nlink, mtime, filesize, rdevmajor, rdevminor, namesize):
    fields = [ino, mode, uid, gid, nlink, mtime, filesize, 0, 0, rdevmajor, rdevminor, namesize, 0]
    return NEWC_MAGIC + "".join(f"{value:08x}" for value in fields).encode("ascii")


def padding(length):
    return b"\0" * ((-length) % 4)


class NewcWriter:
    def __init__(self, stream):
        self.stream = stream
        self.ino = 0
        self.offset = 0

    def write(self, data):
        self.stream.write(data)
        self.offset += len(data)

    def pad(self):
        self.write(padding(self.offset))

    def addEntry(self, name, st, data=b"", sourcePath=None):
        self.ino += 1
        encodedName = name.encode("utf-8") + b"\0"
        filesize = os.path.getsize(sourcePath) if sourcePath else len(data)
        rdev = st.st_rdev if (stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode)) else 0

        self.write(encodeHeader(
            self.ino,
            st.st_mode,
            st.st_uid,
            st.st_gid,
            2 if stat.S_ISDIR(st.st_mode) else 1,
            max(0, int(st.st_mtime)),
            filesize,
            os.major(rdev),
            os.minor(rdev),
            len(encodedName)
        ))
        self.write(encodedName)
        self.pad()

        if sourcePath:
            with open(sourcePath, "rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    self.write(chunk)
        else:
            self.write(data)
        self.pad()

    def finish(self):
        self.ino += 1
        encodedName = TRAILER.encode("ascii") + b"\0"
        self.write(encodeHeader(0, 0, 0, 0, 1, 0, 0, 0, 0, len(encodedName)))
        self.write(encodedName)
        self.pad()


def walkTree(rootDir):
    """Yield (archive name, path) pairs, parents before children, names sorted."""
    yield ".", rootDir
    for dirpath, dirnames, filenames in os.walk(rootDir, followlinks=False):
        dirnames.sort()
        relDir = os.path.relpath(dirpath, rootDir)
        for name in sorted(filenames + dirnames):
            rel = name if relDir == "." else os.path.join(relDir, name)
            yield rel.replace(os.sep, "/"), os.path.join(dirpath, name)


def installInit(rootDir, initScript):
    target = os.path.join(rootDir, INIT_NAME)
    if os.path.lexists(target):
        os.remove(target)
    shutil.copyfile(initScript, target)
    os.chmod(target, 0o755)


def assembleInitramfs(rootDir, outputPath, initScript=None, compressLevel=9):
    if not os.path.isdir(rootDir):
        raise MissingInputFile(f"Root filesystem directory not found: {rootDir}")

    if initScript is not None:
        if not os.path.isfile(initScript):
            raise MissingInputFile(f"Init script not found: {initScript}")
        installInit(rootDir, initScript)

    initPath = os.path.join(rootDir, INIT_NAME)
    if not os.path.lexists(initPath):
        raise ValidationFailure(f"Root filesystem has no /{INIT_NAME}: {rootDir}")
    if not os.path.islink(initPath) and not os.access(initPath, os.X_OK):
        makeExecutable(initPath)

    logInfo(f"Creating initramfs archive: {outputPath}")
    os.makedirs(os.path.dirname(os.path.abspath(outputPath)), exist_ok=True)

    count = 0
    with open(outputPath, "wb") as raw:
        with gzip.GzipFile(fileobj=raw, mode="wb", compresslevel=compressLevel, mtime=0) as compressed:
            writer = NewcWriter(compressed)
            for name, path in walkTree(rootDir):
                st = os.lstat(path)
                if stat.S_ISLNK(st.st_mode):
                    writer.addEntry(name, st, os.readlink(path).encode("utf-8"))
                elif stat.S_ISREG(st.st_mode):
                    writer.addEntry(name, st, sourcePath=path)
                elif stat.S_ISSOCK(st.st_mode):
                    logVerbose(f"Skipping socket: {path}")
                    continue
                else:
                    writer.addEntry(name, st)
                count += 1
            writer.finish()

    logVerbose(f"Archived {count} entries")
    return Artifact.fromPath(INITRAMFS_ARCHIVE, outputPath)


def listInitramfs(path):
    with gzip.open(path, "rb") as f:
        data = f.read()

    entries = []
    offset = 0
    while offset + HEADER_SIZE <= len(data):
        header = data[offset:offset + HEADER_SIZE]
        if header[:6] != NEWC_MAGIC:
            raise ValidationFailure(f"Bad cpio header at offset {offset}")

        fields = [int(header[6 + i * 8:14 + i * 8], 16) for i in range(13)]
        mode, uid, gid, filesize, namesize = fields[1], fields[2], fields[3], fields[6], fields[11]

        offset += HEADER_SIZE
        name = data[offset:offset + namesize - 1].decode("utf-8")
        offset += namesize
        offset += (-offset) % 4
        body = data[offset:offset + filesize]
        offset += filesize
        offset += (-offset) % 4

        if name == TRAILER:
            break

        linkTarget = body.decode("utf-8") if stat.S_ISLNK(mode) else None
        entries.append(CpioEntry(name, mode, uid, gid, filesize, linkTarget))

    return entries
