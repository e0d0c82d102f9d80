import os
import re
import math
import stat
import shutil
import hashlib
import tempfile
import subprocess

import json5
import asteval

from .buildlog import VERBOSE, buildLog, logVerbose
from .errors import CommandFailed, MissingDependency, ValidationFailure

SIZE_UNITS = {
    "":   1,
    "B":  1,
    "K":  1024,
    "KB": 1024,
    "M":  1024**2,
    "MB": 1024**2,
    "G":  1024**3,
    "GB": 1024**3,
    "T":  1024**4,
    "TB": 1024**4,
}

MEGABYTE = SIZE_UNITS["M"]

aeval = asteval.Interpreter()

def _pathConcat(path1, path2):
    path2_rel = os.path.relpath(path2, "/") if os.path.isabs(path2) else path2
    full_path = os.path.normpath(os.path.join(path1, path2_rel))
    abs_path1 = os.path.abspath(path1)
    abs_full = os.path.abspath(full_path)
    if abs_full != abs_path1 and not abs_full.startswith(abs_path1 + os.sep):
        raise ValidationFailure(f"path escapes its base directory: {path1} | {path2}")

    return full_path

def pathConcat(*paths):
    if not paths:
        return ""

    full_path = paths[0]
    for p in paths[1:]:
        full_path = _pathConcat(full_path, p)

    return full_path

def getSize(path):
    if os.path.isfile(path):
        return os.path.getsize(path)

    total = 0
    for dirpath, dirnames, filenames in os.walk(path, followlinks=False):
        for f in filenames:
            fp = os.path.join(dirpath, f)
            if os.path.islink(fp):
                continue
            try:
                total += os.path.getsize(fp)
            except FileNotFoundError:
                pass
    return total

def splitNumberUnit(s):
    match = re.fullmatch(r"\s*([\d\.]+)\s*([a-zA-Z]*)\s*", s)
    if match:
        number, unit = match.groups()
        return float(number), unit.upper()
    raise ValidationFailure(f"Malformed size literal: {s}")

def calcSize(sizeLitteral, folderOrFilelist=None):
    """Resolve a size literal to bytes.

    Accepts a number of bytes, a literal with a unit ("64M", "1.5G") or an
    expression over ``auto``, the total size of the given folder or files.
    """
    if isinstance(sizeLitteral, (int, float)):
        return math.ceil(sizeLitteral)

    if "auto" in sizeLitteral:
        if not folderOrFilelist:
            return 0

        contentSize = 0
        if isinstance(folderOrFilelist, (list, tuple)):
            for path in folderOrFilelist:
                contentSize += getSize(path)
        else:
            contentSize = getSize(folderOrFilelist)

        evalStr = sizeLitteral.replace("auto", str(contentSize))
        result = aeval(evalStr)
        if aeval.error or not isinstance(result, (int, float)) or not math.isfinite(result):
            raise ValidationFailure(f"Invalid size expression: {sizeLitteral}")
        return math.ceil(result)

    number, unit = splitNumberUnit(sizeLitteral)

    if not unit in SIZE_UNITS:
        raise ValidationFailure(f"Unknown size unit: {unit}")

    return math.ceil(number * SIZE_UNITS[unit])

def deleteDirectory(path):
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)

def deleteFile(path):
    if os.path.lexists(path):
        os.remove(path)

def deleteAny(path):
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)

def makeExecutable(path):
    st = os.stat(path)
    os.chmod(path, st.st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

def findMissingCommands(commands):
    return [cmd for cmd in commands if shutil.which(cmd) is None]

def requireCommands(commands):
    logVerbose("Checking dependencies...")
    missing = findMissingCommands(commands)
    if missing:
        raise MissingDependency(f"Missing required commands: {' '.join(missing)}")
    logVerbose("All dependencies found")

def buildExecute(cmd, checkValid=True):
    cmd = [str(part) for part in cmd]
    buildLog(f"Execute command: {cmd}", level=VERBOSE)

    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1
        )
    except FileNotFoundError as e:
        raise MissingDependency(f"Command not found: {cmd[0]}") from e

    output_lines = []
    try:
        for line in process.stdout:
            buildLog(line.rstrip(), True, level=VERBOSE)
            output_lines.append(line)
        returncode = process.wait()
    except BaseException:
        # the caller's cleanup must not race a command that is still running
        process.terminate()
        process.wait()
        raise
    finally:
        process.stdout.close()
    output = "".join(output_lines)

    if returncode != 0 and checkValid:
        raise CommandFailed(cmd, returncode, output)

    return output

def dictChecksum(tbl):
    filtered = {k: v for k, v in tbl.items() if not k.startswith("_")}
    return hashlib.md5(json5.dumps(filtered, sort_keys=True).encode('utf-8')).hexdigest()

def fileChecksum(path, algorithm="md5"):
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()

def writeFileAtomic(path, text):
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmpPath = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmpPath, path)
    except BaseException:
        deleteFile(tmpPath)
        raise
