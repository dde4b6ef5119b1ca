# adflow/infra/flow/nodes/file_transfer.py
"""
File transfer node.

Collects source files (local globs or remote downloads), optionally merges
and zips them, then copies or uploads the result into the target folder.
Scratch files created during the run are always removed.
"""
from __future__ import annotations

import asyncio
import fnmatch
import glob
import os
import posixpath
import shutil
import uuid
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from adflow.config import get_settings
from adflow.infra.errors import NodeConfigError, RemoteTransferError
from adflow.infra.flow.models import NodeKind
from adflow.infra.flow.nodes.base import BaseNode
from adflow.infra.flow.nodes.remote import (
    REMOTE_ERRORS,
    ClientFactory,
    HostResolver,
    HostSettings,
    RemoteFileClient,
    connect,
)

SOURCE_TYPES = ("localhost", "custom", "host")
GLOB_CHARS = ("*", "?", "[")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_pattern(path: str) -> bool:
    return any(ch in path for ch in GLOB_CHARS)


class FileTransferNode(BaseNode):
    """Moves files between the local filesystem and remote hosts."""

    kind = NodeKind.FILE_TRANSFER

    # ============================================================
    #                   VALIDATION
    # ============================================================
    def validate(self, config: Dict[str, Any]) -> None:
        """
        Check every host, credential and path field before any network call.

        Raises:
            NodeConfigError: On the first missing or invalid field
        """
        source = config.get("source_setting")
        target = config.get("target_setting")
        if not source:
            raise NodeConfigError("source_setting is required")
        if not target:
            raise NodeConfigError("target_setting is required")

        self._validate_endpoint(source, "source")
        self._validate_endpoint(target, "target")

        files = source.get("files")
        if not files or any(_blank(f) for f in files):
            raise NodeConfigError("source.files must list at least one non-empty path")
        if _blank(target.get("folder")):
            raise NodeConfigError("target.folder must not be empty")

    @staticmethod
    def _validate_endpoint(setting: Dict[str, Any], side: str) -> None:
        source_type = setting.get("source_type")
        if source_type == "localhost":
            return
        if source_type == "host":
            if _blank(setting.get("host_id")):
                raise NodeConfigError(f"{side}.host_id must not be empty")
            return
        if source_type != "custom":
            raise NodeConfigError(f"{side}.source_type must be one of {', '.join(SOURCE_TYPES)}")

        host = setting.get("host_setting")
        if not host:
            raise NodeConfigError(f"{side}.host_setting is required")
        for name in ("host", "username"):
            if _blank(host.get(name)):
                raise NodeConfigError(f"{side}.host_setting.{name} must not be empty")
        if (host.get("authentication_type") or "password") == "pem":
            if _blank(host.get("pem")):
                raise NodeConfigError(f"{side}.host_setting.pem must not be empty")
        elif _blank(host.get("password")):
            raise NodeConfigError(f"{side}.host_setting.password must not be empty")

    # ============================================================
    #                   PERFORM
    # ============================================================
    async def perform(self, config: Dict[str, Any], merged_inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.validate(config)
        # blocking file and network I/O
        return await asyncio.to_thread(self._transfer, config)

    def _transfer(self, config: Dict[str, Any]) -> Dict[str, Any]:
        source = config["source_setting"]
        target = config["target_setting"]
        scratch_root = Path(self.context.services.get("scratch_dir") or get_settings().scratch_dir)
        scratch = scratch_root / "file_transfer" / self.node_id / uuid.uuid4().hex

        staged: List[Path] = []
        try:
            source_files = self._collect(source, scratch)
            self.log.info(f"Collected {len(source_files)} source files")
            processed = self._process(source_files, source, scratch, staged)
            results = self._deliver(processed, target)
        finally:
            self._cleanup(scratch, staged)

        self.log.info(f"Transferred {len(processed)} files to {target['folder']}")
        return {
            "source_files_count": len(source_files),
            "processed_files": [p.name for p in processed],
            "transfer_results": results,
        }

    # ============================================================
    #                   SOURCE
    # ============================================================
    def _collect(self, source: Dict[str, Any], scratch: Path) -> List[Path]:
        patterns: List[str] = list(source["files"])
        if source["source_type"] == "localhost":
            return self._collect_local(patterns)

        scratch.mkdir(parents=True, exist_ok=True)
        downloaded: List[Path] = []
        with self._client(source) as client:
            for pattern in patterns:
                for remote_path in self._expand_remote(client, pattern):
                    local_path = scratch / posixpath.basename(remote_path)
                    self.log.info(f"Downloading {remote_path}")
                    self._remote_call(client.download, remote_path, str(local_path))
                    downloaded.append(local_path)
        if not downloaded:
            raise FileNotFoundError("No source files were downloaded")
        return downloaded

    def _collect_local(self, patterns: List[str]) -> List[Path]:
        files: List[Path] = []
        for pattern in patterns:
            if _is_pattern(pattern):
                files.extend(Path(p) for p in sorted(glob.glob(pattern)) if os.path.isfile(p))
            elif os.path.isfile(pattern):
                files.append(Path(pattern))
            else:
                self.log.warning(f"Source file does not exist: {pattern}")
        if not files:
            raise FileNotFoundError("No source files found")
        return files

    def _expand_remote(self, client: RemoteFileClient, pattern: str) -> List[str]:
        if not _is_pattern(pattern):
            return [pattern]
        directory, name_pattern = posixpath.split(pattern)
        directory = directory or "."
        names = self._remote_call(client.list_dir, directory)
        return [posixpath.join(directory, name) for name in sorted(names) if fnmatch.fnmatch(name, name_pattern)]

    # ============================================================
    #                   MERGE / ZIP
    # ============================================================
    def _process(self, files: List[Path], source: Dict[str, Any], scratch: Path, staged: List[Path]) -> List[Path]:
        """Merge and/or zip the collected files; every file written is added to ``staged``."""
        merge = source.get("multifile_merge")
        use_zip = source.get("use_zip")
        if not merge and not use_zip:
            return files

        workdir = Path(source["tmp_folder"]) if source.get("tmp_folder") else scratch
        workdir.mkdir(parents=True, exist_ok=True)
        processed = files

        if merge and len(files) > 1:
            name = files[0].name if source.get("use_original_name") else (source.get("file_name") or "merged_file")
            merged = workdir / name
            if merged not in files:
                staged.append(merged)
            with open(merged, "wb") as out:
                for path in files:
                    out.write(path.read_bytes())
                    out.write(b"\n")
            self.log.info(f"Merged {len(files)} files into {merged.name}")
            processed = [merged]

        if use_zip:
            archive = workdir / f"{processed[0].stem}.zip"
            staged.append(archive)
            with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for path in processed:
                    zf.write(path, arcname=path.name)
            self.log.info(f"Compressed {len(processed)} files into {archive.name}")
            processed = [archive]

        return processed

    # ============================================================
    #                   TARGET
    # ============================================================
    def _deliver(self, files: List[Path], target: Dict[str, Any]) -> List[Dict[str, Any]]:
        folder: str = target["folder"]
        results = []

        if target["source_type"] == "localhost":
            Path(folder).mkdir(parents=True, exist_ok=True)
            for path in files:
                destination = Path(folder) / path.name
                shutil.copy2(path, destination)
                results.append({"source": str(path), "target": str(destination), "size": destination.stat().st_size, "success": True})
            return results

        with self._client(target) as client:
            self._remote_call(client.ensure_dir, folder)
            for path in files:
                destination = posixpath.join(folder, path.name)
                self.log.info(f"Uploading {path.name} to {destination}")
                self._remote_call(client.upload, str(path), destination)
                results.append({"source": str(path), "target": destination, "size": path.stat().st_size, "success": True})
        return results

    # ============================================================
    #                   HELPERS
    # ============================================================
    def _host_settings(self, setting: Dict[str, Any]) -> HostSettings:
        if setting["source_type"] == "host":
            resolver: Optional[HostResolver] = self.context.services.get("host_resolver")
            if resolver is None:
                raise NodeConfigError("No host resolver is configured")
            host = resolver.resolve(setting["host_id"])
            if _blank(host.host) or _blank(host.username):
                raise NodeConfigError(f"Host {setting['host_id']} has no host or username configured")
            return host
        return HostSettings.from_dict(setting["host_setting"])

    @contextmanager
    def _client(self, setting: Dict[str, Any]) -> Iterator[RemoteFileClient]:
        factory: ClientFactory = self.context.services.get("remote_client_factory") or connect
        client = factory(self._host_settings(setting))
        try:
            yield client
        finally:
            client.close()

    @staticmethod
    def _remote_call(fn, *args):
        try:
            return fn(*args)
        except RemoteTransferError:
            raise
        except REMOTE_ERRORS as e:
            raise RemoteTransferError(f"{fn.__name__} failed for {args[0]}: {e}") from e

    def _cleanup(self, scratch: Path, staged: List[Path]) -> None:
        for path in staged:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                self.log.warning(f"Could not remove staged file {path}: {e}")
        if not scratch.exists():
            return
        try:
            shutil.rmtree(scratch)
        except OSError as e:
            self.log.warning(f"Could not remove scratch directory {scratch}: {e}")
        parent = scratch.parent
        if parent.exists() and not any(parent.iterdir()):
            parent.rmdir()
