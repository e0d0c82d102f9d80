import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional

from .buildlog import buildLog, logInfo, logWarning
from .errors import CommandFailed, SourceFetchFailure, ValidationFailure
from .utils import buildExecute, deleteAny, deleteDirectory, deleteFile, pathConcat


@dataclass
class SourceSpec:
    name: str
    version: str
    kind: str
    primary: str
    fallback: Optional[str] = None

    @classmethod
    def fromProject(cls, name, data):
        return cls(name, str(data["version"]), data["kind"], data["primary"], data.get("fallback"))

    @property
    def locations(self):
        return [location for location in (self.primary, self.fallback) if location]


def cacheName(version):
    return version.replace(os.sep, "_").replace(" ", "_")


class SourceResolver:
    """Fetch source trees into a cache keyed by (name, version).

    A fetch goes into a private temporary directory next to the cache entry and
    is renamed into place only once complete, so a failed or concurrent fetch
    never leaves a half-populated entry behind.
    """

    def __init__(self, cacheDir, execute=buildExecute):
        self.cacheDir = pathConcat(cacheDir, "sources")
        self.execute = execute
        self.fetchers = {
            "git": self.fetchGit,
            "tarball": self.fetchTarball,
            "directory": self.fetchDirectory
        }

    def cacheEntry(self, source):
        return pathConcat(self.cacheDir, source.name, cacheName(source.version))

    def isCached(self, source):
        return os.path.isdir(self.cacheEntry(source))

    def fetchGit(self, location, source, target):
        cmd = ["git", "clone", "--depth", "1"]
        if source.version not in ("HEAD", "default"):
            cmd += ["--branch", source.version]
        cmd += [location, target]
        self.execute(cmd)

    def fetchTarball(self, location, source, target):
        archive = os.path.join(target, ".download")
        buildLog(f"Downloading file ({location}): {archive}")
        self.execute(["wget", "-q", "-O", archive, location])
        self.execute(["tar", "-xf", archive, "-C", target, "--strip-components=1"])
        deleteFile(archive)

    def fetchDirectory(self, location, source, target):
        if not os.path.isdir(location):
            raise FileNotFoundError(f"source directory not found: {location}")
        shutil.copytree(location, target, symlinks=True, dirs_exist_ok=True)

    def fetch(self, source):
        fetcher = self.fetchers.get(source.kind)
        if fetcher is None:
            raise ValidationFailure(f"Unknown source kind: {source.kind}")

        entry = self.cacheEntry(source)
        parent = os.path.dirname(entry)
        os.makedirs(parent, exist_ok=True)

        errors = []
        for location in source.locations:
            logInfo(f"Fetching {source.name} {source.version} from {location}")
            partial = tempfile.mkdtemp(dir=parent, prefix=f".{cacheName(source.version)}.partial-")
            try:
                fetcher(location, source, partial)
            except (CommandFailed, OSError) as e:
                logWarning(f"Fetching {source.name} from {location} failed: {e}")
                errors.append(f"{location}: {e}")
                deleteDirectory(partial)
                continue

            try:
                os.rename(partial, entry)
            except OSError:
                if not os.path.isdir(entry):
                    deleteDirectory(partial)
                    raise
                # another fetch of the same key finished first
                deleteDirectory(partial)
            return entry

        raise SourceFetchFailure(f"could not fetch {source.name} {source.version}: {'; '.join(errors)}")

    def resolve(self, source, workDir=None):
        """Return a directory holding the source tree.

        With ``workDir`` the cached tree is copied to ``workDir/<name>`` so
        builds never modify the cache entry.
        """
        entry = self.cacheEntry(source)
        if os.path.isdir(entry):
            logInfo(f"Using cached {source.name} {source.version}: {entry}")
        else:
            entry = self.fetch(source)

        if workDir is None:
            return entry

        target = pathConcat(workDir, source.name)
        deleteAny(target)
        shutil.copytree(entry, target, symlinks=True)
        return target
