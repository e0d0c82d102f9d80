"""Stage graph execution.

A pipeline is a fixed registry of ``BuildStage`` objects. The executor orders
them topologically, rejects cycles before anything runs, skips stages whose
cache key matches a previous completed run and aggregates a ``StageResult``
per stage into a ``PipelineResult``.
"""
import os
import time
import graphlib
import threading
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from typing import Callable, Optional

import json5

from .buildlog import buildLog, logError, logWarning, logVerbose
from .errors import CycleDetected, MissingDependency, MissingInputFile, StageFailure, ValidationFailure
from .utils import dictChecksum, deleteDirectory, fileChecksum, pathConcat, writeFileAtomic

KERNEL_IMAGE = "kernel-image"
INITRAMFS_ARCHIVE = "initramfs-archive"
BOOTLOADER_BINARY = "bootloader-binary"
ISO_IMAGE = "iso-image"
RAW_DISK_IMAGE = "raw-disk-image"

ARTIFACT_KINDS = [KERNEL_IMAGE, INITRAMFS_ARCHIVE, BOOTLOADER_BINARY, ISO_IMAGE, RAW_DISK_IMAGE]

BUILT = "built"
CACHED = "cached"
FAILED = "failed"
ABORTED = "aborted"


@dataclass
class Artifact:
    kind: str
    path: str
    size: int = 0
    checksum: Optional[str] = None

    @classmethod
    def fromPath(cls, kind, path, withChecksum=False):
        if kind not in ARTIFACT_KINDS:
            raise ValidationFailure(f"Unknown artifact kind: {kind}")
        if not os.path.isfile(path):
            raise MissingInputFile(f"{kind} not found: {path}")

        checksum = fileChecksum(path, "sha256") if withChecksum else None
        return cls(kind, path, os.path.getsize(path), checksum)


@dataclass
class BuildStage:
    name: str
    action: Callable
    depends: list = field(default_factory=list)
    produces: list = field(default_factory=list)
    # any json5-serialisable value, None disables caching for the stage
    cacheKey: object = None


@dataclass
class StageResult:
    stage: str
    status: str
    outputs: dict = field(default_factory=dict)
    error: Optional[Exception] = None
    duration: float = 0.0


@dataclass
class PipelineResult:
    results: list

    @property
    def ok(self):
        return all(result.status in (BUILT, CACHED) for result in self.results)

    @property
    def failed(self):
        return [result for result in self.results if result.status == FAILED]

    def result(self, stageName):
        for result in self.results:
            if result.stage == stageName:
                return result
        return None

    def summary(self):
        counts = {BUILT: 0, CACHED: 0, FAILED: 0, ABORTED: 0}
        for result in self.results:
            counts[result.status] += 1
        return counts


@dataclass
class BuildContext:
    workDir: str
    cacheDir: str
    noCache: bool = False
    project: dict = field(default_factory=dict)
    artifacts: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def stageDir(self, stageName, fresh=False):
        path = pathConcat(self.workDir, "stages", stageName)
        if fresh:
            deleteDirectory(path)
        os.makedirs(path, exist_ok=True)
        return path

    def addArtifact(self, artifact):
        with self._lock:
            existing = self.artifacts.get(artifact.kind)
            if existing is not None and os.path.abspath(existing.path) != os.path.abspath(artifact.path):
                raise ValidationFailure(f"{artifact.kind} was already produced at {existing.path}")
            self.artifacts[artifact.kind] = artifact

    def artifact(self, kind):
        with self._lock:
            artifact = self.artifacts.get(kind)
        if artifact is None:
            raise MissingDependency(f"{kind} was never produced")
        return artifact

    def setOutputs(self, stageName, outputs):
        with self._lock:
            self.outputs[stageName] = dict(outputs)

    def output(self, stageName, name):
        with self._lock:
            outputs = self.outputs.get(stageName, {})
        if name not in outputs:
            raise MissingDependency(f"stage '{stageName}' did not produce '{name}'")
        return outputs[name]


class StageExecutor:
    def __init__(self, stages, context, failFast=True, jobs=1):
        self.context = context
        self.failFast = failFast
        self.jobs = max(1, jobs)
        self.stages = {}
        for stage in stages:
            if stage.name in self.stages:
                raise ValidationFailure(f"Duplicate stage: {stage.name}")
            self.stages[stage.name] = stage
        self.keys = {}

    def executionOrder(self, targets=None):
        for stage in self.stages.values():
            for dep in stage.depends:
                if dep not in self.stages:
                    raise CycleDetected(f"stage '{stage.name}' depends on unknown stage '{dep}'")

        selected = self.selectStages(targets)
        graph = {name: self.stages[name].depends for name in self.stages if name in selected}
        try:
            return list(graphlib.TopologicalSorter(graph).static_order())
        except graphlib.CycleError as e:
            raise CycleDetected(f"dependency cycle detected: {' -> '.join(e.args[1])}") from e

    def selectStages(self, targets):
        if not targets:
            return set(self.stages)

        selected = set()
        pending = list(targets)
        while pending:
            name = pending.pop()
            if name not in self.stages:
                raise ValidationFailure(f"Unknown stage: {name}")
            if name not in selected:
                selected.add(name)
                pending.extend(self.stages[name].depends)
        return selected

    def computeKeys(self, order):
        self.keys = {}
        for name in order:
            stage = self.stages[name]
            depKeys = {dep: self.keys.get(dep) for dep in stage.depends}
            if stage.cacheKey is None or None in depKeys.values():
                self.keys[name] = None
            else:
                self.keys[name] = dictChecksum({"stage": name, "key": stage.cacheKey, "depends": depKeys})

    def recordPath(self, stageName):
        return pathConcat(self.context.cacheDir, "stages", stageName + ".json5")

    def loadCached(self, stage, key):
        if key is None or self.context.noCache:
            return None

        path = self.recordPath(stage.name)
        if not os.path.exists(path):
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                record = json5.load(f)
        except ValueError:
            logWarning(f"Ignoring unreadable cache record: {path}")
            return None

        if record.get("key") != key:
            return None

        outputs = record.get("outputs", {})
        if not all(os.path.exists(path) for path in outputs.values()):
            return None
        if any(kind not in outputs for kind in stage.produces):
            return None
        return outputs

    def saveRecord(self, stage, key, outputs):
        writeFileAtomic(self.recordPath(stage.name), json5.dumps({"key": key, "outputs": outputs}, indent=2))

    def publish(self, stage, outputs):
        stageDir = os.path.abspath(self.context.stageDir(stage.name))
        for name, path in outputs.items():
            absPath = os.path.abspath(path)
            if absPath != stageDir and not absPath.startswith(stageDir + os.sep):
                raise ValidationFailure(f"stage '{stage.name}' produced '{name}' outside its own directory: {path}")
            if name in ARTIFACT_KINDS:
                self.context.addArtifact(Artifact.fromPath(name, absPath))
        self.context.setOutputs(stage.name, outputs)

    def stageLog(self, stage, index, count, comment=""):
        buildLog(f"Building stage ---------------- {index}/{count} {stage.name}{comment}")

    def execute(self, stage, index, count):
        start = time.monotonic()
        key = self.keys.get(stage.name)
        try:
            cached = self.loadCached(stage, key)
            if cached is not None:
                self.publish(stage, cached)
                self.stageLog(stage, index, count, " (cache)")
                return StageResult(stage.name, CACHED, cached, duration=time.monotonic() - start)

            self.stageLog(stage, index, count)
            outputs = stage.action(self.context, stage) or {}
            outputs = {name: os.path.abspath(path) for name, path in outputs.items()}

            missing = [kind for kind in stage.produces if kind not in outputs]
            if missing:
                raise ValidationFailure(f"stage did not produce: {', '.join(missing)}")

            self.publish(stage, outputs)
            if key is not None:
                self.saveRecord(stage, key, outputs)
        except Exception as e:
            logError(f"Stage {stage.name} failed: {e}")
            return StageResult(stage.name, FAILED, error=e, duration=time.monotonic() - start)

        logVerbose(f"Stage {stage.name} finished in {time.monotonic() - start:.1f}s")
        return StageResult(stage.name, BUILT, outputs, duration=time.monotonic() - start)

    def abortDependent(self, name, blocked):
        logWarning(f"Skipping stage {name}: dependency {', '.join(blocked)} did not complete")
        return StageResult(name, ABORTED, error=MissingDependency(f"dependencies failed: {', '.join(blocked)}"))

    def blockedBy(self, name, results):
        return [dep for dep in self.stages[name].depends if results[dep].status in (FAILED, ABORTED)]

    def runSequential(self, order):
        results = {}
        for index, name in enumerate(order, 1):
            blocked = self.blockedBy(name, results)
            if blocked:
                results[name] = self.abortDependent(name, blocked)
                continue

            results[name] = self.execute(self.stages[name], index, len(order))
            if results[name].status == FAILED and self.failFast:
                return results, results[name]
        return results, None

    def runParallel(self, order):
        sorter = graphlib.TopologicalSorter({name: self.stages[name].depends for name in order})
        sorter.prepare()

        results = {}
        failure = None
        index = 0
        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            running = {}
            while sorter.is_active():
                ready = list(sorter.get_ready()) if failure is None else []
                for name in ready:
                    blocked = self.blockedBy(name, results)
                    if blocked:
                        results[name] = self.abortDependent(name, blocked)
                        sorter.done(name)
                        continue

                    index += 1
                    running[pool.submit(self.execute, self.stages[name], index, len(order))] = name

                if not running:
                    if ready:
                        continue
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    results[name] = future.result()
                    sorter.done(name)
                    if results[name].status == FAILED and self.failFast and failure is None:
                        failure = results[name]

        return results, failure

    def run(self, targets=None):
        order = self.executionOrder(targets)
        self.computeKeys(order)

        buildLog("Stage list:")
        for index, name in enumerate(order, 1):
            buildLog(f"{index}/{len(order)} {name} (depends: {', '.join(self.stages[name].depends) or '-'})", True)
        buildLog(";")

        if self.jobs > 1:
            results, failure = self.runParallel(order)
        else:
            results, failure = self.runSequential(order)

        pipeline = PipelineResult([results[name] for name in order if name in results])
        if failure is not None:
            raise StageFailure(failure.stage, failure.error, pipeline) from failure.error
        return pipeline
