import os
import sys
import argparse

from . import VERSION, formatVersion
from .artifacts import DEFAULT_EXPORTS, exportArtifacts, validateArtifact
from .buildlog import buildLog, closeLog, logError, logInfo, logSuccess, logVerbose, logWarning, setupLog
from .config import loadProject, resolveJobs
from .diskimage import FAT_TYPES, DiskImageBuilder, DiskImageSpec, DiskTools, imageSizeMB
from .errors import BuildError, StageFailure
from .pipeline import defaultStages
from .stages import ARTIFACT_KINDS, BuildContext, StageExecutor
from .utils import deleteAny, deleteDirectory

CLEAN_FILES = ["boot.img", "output.iso", "bzImage", "initramfs"]


class BuildArgumentParser(argparse.ArgumentParser):
    """Argument errors exit with status 1 like every other build failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        logError(message)
        sys.exit(1)


def warnIfNotRoot():
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        logWarning("Not running as root. Mounting the disk image may fail without sudo.")


def imageParser():
    parser = BuildArgumentParser(
        prog="hb-image",
        description="builds a bootable FAT disk image holding a kernel, an initramfs and the syslinux bootloader",
        epilog="examples:\n"
               "  hb-image\n"
               "  hb-image -s 100 -o myboot.img\n"
               "  hb-image -s auto*2 -k ./custom/bzImage -v",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("-s", "--size", type=str, default="50", help="size of the image in MB, a literal with a unit (64M) or an expression over auto (default: 50)")
    parser.add_argument("-o", "--output", type=str, default="boot.img", help="output image file (default: boot.img)")
    parser.add_argument("-k", "--kernel", type=str, default="./myiso/bzImage", help="kernel image path (default: ./myiso/bzImage)")
    parser.add_argument("-i", "--initrd", type=str, default="./myiso/initramfs", help="initramfs path (default: ./myiso/initramfs)")
    parser.add_argument("-c", "--config", type=str, default="./myiso/isolinux/isolinux.cfg", help="bootloader config path (default: ./myiso/isolinux/isolinux.cfg)")
    parser.add_argument("-m", "--mount-point", type=str, default="mnt", help="temporary mount point (default: mnt)")
    parser.add_argument("-f", "--force", action="store_true", help="overwrite the output file without asking")
    parser.add_argument("--fs-type", choices=FAT_TYPES, default="fat", help="filesystem to format the image with (default: fat)")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable verbose output")
    return parser


def imageMain(argv=None):
    args = imageParser().parse_args(argv)
    setupLog(args.verbose)

    logInfo("Starting build process...")
    logVerbose("Configuration:")
    logVerbose(f"  Size: {args.size}")
    logVerbose(f"  Output: {args.output}")
    logVerbose(f"  Kernel: {args.kernel}")
    logVerbose(f"  Initrd: {args.initrd}")
    logVerbose(f"  Config: {args.config}")
    logVerbose(f"  Mount point: {args.mount_point}")

    try:
        payloadPaths = [path for path in (args.kernel, args.initrd, args.config) if os.path.isfile(path)]
        spec = DiskImageSpec.forBoot(
            args.kernel,
            args.initrd,
            args.config,
            sizeMB=imageSizeMB(args.size, payloadPaths),
            output=args.output,
            fsType=args.fs_type,
            mountPoint=args.mount_point,
            force=args.force
        )
        warnIfNotRoot()
        DiskImageBuilder(spec, tools=DiskTools()).build()
    except BuildError as e:
        logError(str(e))
        logError("Build failed")
        return 1
    except KeyboardInterrupt:
        logError("Build interrupted")
        return 1
    finally:
        closeLog()

    logSuccess("Build completed successfully!")
    logInfo(f"Boot image created: {args.output}")
    logInfo("To test with QEMU, run:")
    logInfo(f"  qemu-system-x86_64 {args.output}")
    return 0


# ------------------------------------------------ pipeline

def pipelineParser():
    parser = BuildArgumentParser(prog="hb-build", description="builds a minimal bootable linux system from source")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable verbose output")
    parser.add_argument("--version", action="version", version=f"handbuilt {formatVersion(VERSION)}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="run the build pipeline and export its artifacts")
    build.add_argument("-p", "--project", type=str, default=None, help="the path to the json5 project file (default: handbuilt.json5)")
    build.add_argument("-j", "--jobs", type=str, default=None, help="parallel jobs for make, a number or auto")
    build.add_argument("--parallel-stages", type=int, default=None, help="independent stages to run at the same time")
    build.add_argument("-n", "--no-cache", action="store_true", help="does the build anew, does not use the cache")
    build.add_argument("-k", "--keep-going", action="store_true", help="keep building independent stages after a failure")
    build.add_argument("-o", "--output", type=str, default=None, help="export directory (default: from the project)")
    build.add_argument("--stage", dest="stages", action="append", default=None, help="build only this stage and what it depends on")
    build.add_argument("--export", dest="exports", action="append", choices=ARTIFACT_KINDS, default=None, help="artifact kind to export")

    validate = subparsers.add_parser("validate", help="check the binary signature of an artifact")
    validate.add_argument("path", type=str)
    validate.add_argument("--kind", choices=ARTIFACT_KINDS, required=True)

    clean = subparsers.add_parser("clean", help="remove build outputs")
    clean.add_argument("-p", "--project", type=str, default=None, help="the path to the json5 project file")
    clean.add_argument("-a", "--all", action="store_true", help="also remove the source and stage cache")
    return parser


def commandBuild(args):
    project = loadProject(args.project)
    if args.jobs is not None:
        project["jobs"] = resolveJobs(args.jobs)
    if args.parallel_stages is not None:
        project["parallel-stages"] = resolveJobs(args.parallel_stages)
    setupLog(args.verbose, project["logs"])

    buildLog("Handbuilt info:")
    buildLog(f"Handbuilt version: {formatVersion(VERSION)}")
    buildLog(f"Make jobs: {project['jobs']}")
    buildLog(f"Parallel stages: {project['parallel-stages']}")
    buildLog(";")

    context = BuildContext(
        workDir=project["work"],
        cacheDir=project["cache"],
        noCache=args.no_cache,
        project=project
    )
    executor = StageExecutor(
        defaultStages(project),
        context,
        failFast=not args.keep_going,
        jobs=project["parallel-stages"]
    )
    result = executor.run(args.stages)

    counts = result.summary()
    logInfo(", ".join(f"{count} {status}" for status, count in counts.items()))
    if not result.ok:
        first = result.failed[0] if result.failed else result.results[-1]
        raise StageFailure(first.stage, first.error, result)

    if args.exports:
        kinds = args.exports
    elif args.stages:
        kinds = [kind for kind in DEFAULT_EXPORTS if kind in context.artifacts]
    else:
        kinds = DEFAULT_EXPORTS

    outputDir = args.output or project["output"]
    for artifact in exportArtifacts(context, kinds, outputDir):
        validateArtifact(artifact.path, artifact.kind)
        logVerbose(f"{artifact.kind}: {artifact.path} {artifact.size} bytes sha256 {artifact.checksum}")

    logSuccess("Build completed successfully!")
    return 0


def commandValidate(args):
    artifact = validateArtifact(args.path, args.kind)
    logSuccess(f"{artifact.path} is a valid {artifact.kind} ({artifact.size} bytes)")
    return 0


def commandClean(args):
    project = loadProject(args.project)

    logInfo("Cleaning build outputs...")
    for path in [project["output"], project["work"]] + CLEAN_FILES:
        if os.path.lexists(path):
            logVerbose(f"Removing {path}")
            deleteAny(path)

    mountPoint = "mnt"
    if os.path.isdir(mountPoint):
        if DiskTools().isMounted(mountPoint):
            logWarning(f"{mountPoint} is still mounted, leaving it in place")
        else:
            try:
                os.rmdir(mountPoint)
            except OSError:
                logWarning(f"{mountPoint} is not empty, leaving it in place")

    if args.all:
        logInfo("Removing cache...")
        deleteDirectory(project["cache"])

    logSuccess("Clean complete")
    return 0


COMMANDS = {
    "build": commandBuild,
    "validate": commandValidate,
    "clean": commandClean
}


def pipelineMain(argv=None):
    args = pipelineParser().parse_args(argv)
    setupLog(args.verbose)

    try:
        return COMMANDS[args.command](args)
    except BuildError as e:
        logError(str(e))
        logError("Build failed")
        return 1
    except KeyboardInterrupt:
        logError("Build interrupted")
        return 1
    finally:
        closeLog()
