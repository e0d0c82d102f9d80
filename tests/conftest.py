import pytest

from handbuilt import buildlog

ISO_SECTOR = 2048


@pytest.fixture(autouse=True)
def quiet_log(monkeypatch):
    monkeypatch.setattr(buildlog, "verbose_enabled", False)
    yield
    buildlog.closeLog()


def iso_descriptor(kind, body=b""):
    sector = bytearray(ISO_SECTOR)
    sector[0] = kind
    sector[1:7] = b"CD001\x01"
    sector[7:7 + len(body)] = body
    return bytes(sector)


@pytest.fixture
def make_iso():
    """Write a minimal ISO 9660 descriptor set, optionally with an El Torito boot record."""

    def make(path, boot_record=True):
        data = bytearray(16 * ISO_SECTOR)
        data += iso_descriptor(1)
        if boot_record:
            data += iso_descriptor(0, b"EL TORITO SPECIFICATION")
        data += iso_descriptor(255)
        path.write_bytes(bytes(data))
        return path

    return make


@pytest.fixture
def boot_inputs(tmp_path):
    """Kernel, initramfs and bootloader config laid out like an exported build."""
    myiso = tmp_path / "myiso"
    (myiso / "isolinux").mkdir(parents=True)

    kernel = myiso / "bzImage"
    kernel.write_bytes(b"\0" * 0x202 + b"HdrS" + b"\0" * 4096)
    initrd = myiso / "initramfs"
    initrd.write_bytes(b"\x1f\x8b" + b"\0" * 8192)
    config = myiso / "isolinux" / "isolinux.cfg"
    config.write_text("DEFAULT linux\nLABEL linux\n  KERNEL /bzImage\n  APPEND initrd=/initramfs\n", encoding="utf-8")

    return {"kernel": str(kernel), "initrd": str(initrd), "config": str(config)}
