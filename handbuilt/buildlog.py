import os
import sys
import datetime

INFO = "INFO"
SUCCESS = "SUCCESS"
WARNING = "WARNING"
ERROR = "ERROR"
VERBOSE = "VERBOSE"

log_file = None
verbose_enabled = False

def setupLog(verbose=False, logDir=None):
    global log_file, verbose_enabled
    verbose_enabled = verbose

    if logDir is None:
        return None

    os.makedirs(logDir, exist_ok=True)
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    filepath = os.path.join(logDir, f"build_{timestamp}.log")

    closeLog()
    log_file = open(filepath, "w", encoding="utf-8")
    print(f"Log path: {filepath}")
    return filepath

def closeLog():
    global log_file
    if log_file is not None:
        log_file.close()
        log_file = None

def buildLog(logstr, quiet=False, level=INFO):
    if not quiet:
        logstr = f"-------- HANDBUILT [{level}]: {logstr}"

    if level != VERBOSE or verbose_enabled:
        print(logstr, file=sys.stderr if level == ERROR else sys.stdout, flush=True)

    if log_file is not None:
        log_file.write(logstr + "\n")
        log_file.flush()

def logInfo(logstr):
    buildLog(logstr, level=INFO)

def logSuccess(logstr):
    buildLog(logstr, level=SUCCESS)

def logWarning(logstr):
    buildLog(logstr, level=WARNING)

def logError(logstr):
    buildLog(logstr, level=ERROR)

def logVerbose(logstr):
    buildLog(logstr, level=VERBOSE)
