from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest


def _self_signed(directory: Path, name: str, common_name: str) -> tuple[Path, Path]:
    cert_file = directory / f"{name}.pem"
    key_file = directory / f"{name}.key"
    subprocess.run(
        [
            "openssl",
            "req",
            "-x509",
            "-newkey",
            "rsa:2048",
            "-keyout",
            str(key_file),
            "-out",
            str(cert_file),
            "-days",
            "1",
            "-nodes",
            "-subj",
            f"/CN={common_name}",
        ],
        check=True,
        capture_output=True,
    )
    return cert_file, key_file


@pytest.fixture
def tls_files(tmp_path: Path) -> dict[str, Path]:
    """Leaf certificate and key for localhost plus a separate chain file."""

    if shutil.which("openssl") is None:
        pytest.skip("openssl is not available")
    cert_file, key_file = _self_signed(tmp_path, "server", "localhost")
    chain_file, _ = _self_signed(tmp_path, "intermediate", "tginbox test intermediate")
    return {"cert": cert_file, "key": key_file, "chain": chain_file}
