VERSION = [0, 1, 0]

def formatVersion(version):
    return '.'.join(str(n) for n in version)

__version__ = formatVersion(VERSION)
