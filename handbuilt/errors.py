"""Failure taxonomy shared by the pipeline and the disk image builder."""


class BuildError(Exception):
    pass


class MissingDependency(BuildError):
    """A required external tool or a required upstream artifact is absent."""


class MissingInputFile(BuildError):
    """A declared input path does not exist or is empty."""


class CapacityExceeded(BuildError):
    pass


class MountFailure(BuildError):
    pass


class UserAborted(BuildError):
    pass


class SourceFetchFailure(BuildError):
    pass


class ValidationFailure(BuildError):
    pass


class CycleDetected(BuildError):
    pass


class ResourceBusy(BuildError):
    pass


class CommandFailed(BuildError):
    def __init__(self, cmd, returncode, output=""):
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        super().__init__(f"command {cmd} exited with code {returncode}")


class StageFailure(BuildError):
    def __init__(self, stage, cause, results=None):
        self.stage = stage
        self.cause = cause
        self.results = results
        super().__init__(f"stage '{stage}' failed: {cause}")


class BuildInterrupted(BuildError):
    def __init__(self, signum):
        self.signum = signum
        super().__init__(f"interrupted by signal {signum}")
