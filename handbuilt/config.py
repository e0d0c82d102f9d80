import os
import copy

import json5

from . import VERSION, formatVersion
from .buildlog import logInfo, logVerbose
from .errors import ValidationFailure

DEFAULT_PROJECT_FILE = "handbuilt.json5"

SOURCE_NAMES = ["kernel", "userspace", "bootloader"]
SOURCE_KINDS = ["git", "tarball", "directory"]

DEFAULT_PROJECT = {
    "sources": {
        "kernel": {
            "version": "master",
            "kind": "git",
            "primary": "https://github.com/torvalds/linux.git",
            "fallback": None
        },
        "userspace": {
            "version": "master",
            "kind": "git",
            "primary": "https://git.busybox.net/busybox",
            "fallback": "https://github.com/mirror/busybox.git"
        },
        "bootloader": {
            "version": "6.03",
            "kind": "tarball",
            "primary": "https://www.kernel.org/pub/linux/utils/boot/syslinux/syslinux-6.03.tar.gz",
            "fallback": "https://mirrors.edge.kernel.org/pub/linux/utils/boot/syslinux/syslinux-6.03.tar.gz"
        }
    },
    "kernel-config": "linux.config",
    "userspace-config": "busybox.config",
    "init-script": "init.sh",
    "bootloader-config": "syslinux.cfg",
    "jobs": "auto",
    "parallel-stages": 1,
    "work": os.path.join(".temp", "build"),
    "cache": os.path.join(".temp", "cache"),
    "logs": os.path.join(".temp", "logs"),
    "output": "output"
}

def checkVersion(project):
    if not "min-handbuilt-version" in project:
        return True

    minVersion = project["min-handbuilt-version"]

    for index, vernum in enumerate(VERSION):
        if vernum > minVersion[index]:
            return True
        elif vernum < minVersion[index]:
            return False

    return True

def mergeProject(base, override):
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = mergeProject(merged[key], value)
        else:
            merged[key] = value
    return merged

def resolveJobs(jobs):
    if jobs in (None, "auto"):
        return os.cpu_count() or 1

    jobs = int(jobs)
    if jobs < 1:
        raise ValidationFailure(f"jobs must be at least 1, got {jobs}")
    return jobs

def validateProject(project):
    if not checkVersion(project):
        raise ValidationFailure(f"the project requires at least handbuilt {formatVersion(project['min-handbuilt-version'])}. you have {formatVersion(VERSION)} installed")

    sources = project.get("sources", {})
    for name in SOURCE_NAMES:
        if name not in sources:
            raise ValidationFailure(f"source \"{name}\" is not defined in the project")

        source = sources[name]
        if source.get("kind") not in SOURCE_KINDS:
            raise ValidationFailure(f"source \"{name}\" has unknown kind \"{source.get('kind')}\"")

        if not source.get("primary"):
            raise ValidationFailure(f"source \"{name}\" has no primary location")

        if not source.get("version"):
            raise ValidationFailure(f"source \"{name}\" has no version")

    project["jobs"] = resolveJobs(project.get("jobs"))
    project["parallel-stages"] = resolveJobs(project.get("parallel-stages"))
    return project

def loadProject(path=None):
    """Load a json5 project file on top of the built-in defaults.

    A missing default project file is not an error; an explicitly named one is.
    """
    projectData = {}
    if path is None:
        path = DEFAULT_PROJECT_FILE
        explicit = False
    else:
        explicit = True

    if os.path.exists(path):
        logInfo(f"Loading project: {path}")
        with open(path, "r", encoding="utf-8") as f:
            projectData = json5.load(f)
        if not isinstance(projectData, dict):
            raise ValidationFailure(f"project file must contain an object: {path}")
    elif explicit:
        raise ValidationFailure(f"project file not found: {path}")
    else:
        logVerbose(f"No project file at {path}, using defaults")

    project = mergeProject(DEFAULT_PROJECT, projectData)
    # a source entry given in the project file replaces the default one as a whole
    for name, source in projectData.get("sources", {}).items():
        project["sources"][name] = copy.deepcopy(source)
    project["_root"] = os.path.dirname(os.path.abspath(path))
    return validateProject(project)
