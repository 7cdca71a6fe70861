"""
Shell-level tasks the build targets are made of: file system housekeeping,
byte-compilation, docker image build/save, Pulumi CLI download and stack
selection.
"""

import compileall
import glob
import gzip
import os
import platform
import re
import shutil
import stat
import subprocess
import sys
import tarfile
import zipfile
from typing import Dict, Iterable, List, Optional

import docker
import requests
from pulumi import automation as auto

from buildlog import LOG
from targets import BuildError

PULUMI_RELEASES_URL = "https://github.com/pulumi/pulumi/releases/download"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_TIMEOUT = 60

BRANCH_ESCAPE = re.compile(r"[^A-Za-z0-9-]+")


def run(cmd: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> None:
    """Run a process, streaming its combined output to the build log."""
    LOG.info(f"Running: {' '.join(cmd)}")
    process = subprocess.Popen(
        cmd,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    for line in process.stdout:
        LOG.info(line.rstrip())
    returncode = process.wait()
    if returncode != 0:
        raise subprocess.CalledProcessError(returncode, cmd)


def escape_branch_name(branch: str) -> str:
    escaped = BRANCH_ESCAPE.sub("-", branch).strip("-").lower()
    return escaped or "local"


def current_branch(root: str) -> str:
    """Escaped name of the checked out git branch, ``local`` outside of a work tree."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=root,
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        LOG.warning("Unable to determine the git branch, using 'local'")
        return "local"
    return escape_branch_name(result.stdout.strip())


def delete_directories(root: str, patterns: Iterable[str]) -> None:
    for pattern in patterns:
        for directory in glob.glob(os.path.join(root, pattern), recursive=True):
            if os.path.isdir(directory):
                LOG.debug(f"Deleting {directory}")
                shutil.rmtree(directory)


def ensure_existing_directory(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def ensure_clean_directory(path: str) -> str:
    if os.path.isdir(path):
        shutil.rmtree(path)
    return ensure_existing_directory(path)


def pip_install(requirements_file: str) -> None:
    run([sys.executable, "-m", "pip", "install", "--disable-pip-version-check", "-r", requirements_file])


def compile_sources(source_dir: str, optimize: int = 0) -> None:
    if not compileall.compile_dir(source_dir, quiet=1, force=True, optimize=optimize):
        raise BuildError(f"Compilation of {source_dir} failed")


def write_version_file(path: str, version: str, configuration: str) -> None:
    with open(path, "w") as version_file:
        version_file.write(f'__version__ = "{version}"\n')
        version_file.write(f'__configuration__ = "{configuration}"\n')


def docker_build(path: str, dockerfile: str, tag: str, buildargs: Dict[str, str]):
    client = docker.from_env()
    image, logs = client.images.build(
        path=path,
        dockerfile=dockerfile,
        tag=tag,
        buildargs=buildargs,
        nocache=True,
        rm=True,
    )
    for chunk in logs:
        line = chunk.get("stream", "").rstrip()
        if line:
            LOG.info(line)
    return image


def docker_save(tag: str, output: str) -> None:
    client = docker.from_env()
    image = client.images.get(tag)
    with gzip.open(output, "wb") as archive:
        for chunk in image.save(named=True):
            archive.write(chunk)
    LOG.info(f"Saved image {tag} to {output}")


def pulumi_platform() -> str:
    machine = platform.machine().lower()
    arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
    if sys.platform.startswith("win"):
        return f"windows-{arch}.zip"
    if sys.platform == "darwin":
        return f"darwin-{arch}.tar.gz"
    return f"linux-{arch}.tar.gz"


def pulumi_archive_name(version: str, platform_postfix: Optional[str] = None) -> str:
    return f"pulumi-{version}-{platform_postfix or pulumi_platform()}"


def pulumi_download_url(version: str, filename: str) -> str:
    return f"{PULUMI_RELEASES_URL}/{version}/{filename}"


def pulumi_bin_dir(binary_folder: str) -> str:
    """Windows archives ship the CLI under ``pulumi/bin``, the others directly under ``pulumi``."""
    if sys.platform.startswith("win"):
        return os.path.join(binary_folder, "pulumi", "bin")
    return os.path.join(binary_folder, "pulumi")


def pulumi_executable(binary_folder: str) -> str:
    name = "pulumi.exe" if sys.platform.startswith("win") else "pulumi"
    return os.path.join(pulumi_bin_dir(binary_folder), name)


def download_file(url: str, save_path: str, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> None:
    """Stream ``url`` to ``save_path``; the file only appears once the download is complete."""
    partial_path = save_path + ".part"
    response = requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT)
    response.raise_for_status()
    try:
        with open(partial_path, "wb") as fd:
            for chunk in response.iter_content(chunk_size=chunk_size):
                fd.write(chunk)
        os.replace(partial_path, save_path)
    except BaseException:
        if os.path.exists(partial_path):
            os.remove(partial_path)
        raise


def uncompress(archive: str, destination: str) -> None:
    if archive.endswith(".zip"):
        with zipfile.ZipFile(archive, "r") as zip_ref:
            zip_ref.extractall(destination)
    else:
        with tarfile.open(archive, "r:*") as tar_ref:
            if hasattr(tarfile, "data_filter"):
                tar_ref.extractall(destination, filter="data")
            else:
                tar_ref.extractall(destination)


def make_executable(directory: str) -> None:
    for entry in os.scandir(directory):
        if entry.is_file():
            mode = os.stat(entry.path).st_mode
            os.chmod(entry.path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def prepend_to_path(directory: str) -> None:
    paths = os.environ.get("PATH", "").split(os.pathsep)
    if directory not in paths:
        os.environ["PATH"] = os.pathsep.join([directory] + [p for p in paths if p])


def pulumi_login(work_dir: str, access_token: Optional[str]) -> None:
    if access_token:
        run(["pulumi", "login"], cwd=work_dir)
    else:
        run(["pulumi", "login", "--local"], cwd=work_dir)


def create_or_select_stack(stack_name: str, work_dir: str) -> auto.Stack:
    try:
        stack = auto.create_stack(stack_name=stack_name, work_dir=work_dir)
        LOG.info(f"Created stack {stack_name}")
    except auto.CommandError as error:
        # TODO: only fall back on StackAlreadyExistsError once other init failures are reported separately
        LOG.warning(f"Unable to create stack {stack_name}, selecting it instead: {error}")
        stack = auto.select_stack(stack_name=stack_name, work_dir=work_dir)
    return stack
