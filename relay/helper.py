"""Download, verify and install the named-pipe relay helper (npiperelay.exe).

The helper is fetched from its GitHub release together with the published
checksum manifest. The manifest holds ``<sha256-hex>  <filename>`` lines; the
entry for the asset is located by filename and compared with the SHA-256 of
the downloaded bytes. Nothing is copied to the install location unless the
digests match.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import aiohttp

GITHUB_API = "https://api.github.com"
GITHUB = "https://github.com"
USER_AGENT = "builder/1.0"


class HelperInstallError(RuntimeError):
    pass


class ChecksumMismatchError(HelperInstallError):
    pass


class InstallOutcome(str, Enum):
    PRESENT = "present"
    INSTALLED = "installed"
    UP_TO_DATE = "up_to_date"
    UPDATED = "updated"


@dataclass(slots=True)
class HelperRelease:
    repo: str = "albertony/npiperelay"
    version: str = "v1.9.2"
    asset: str = "npiperelay_windows_amd64.exe"
    checksums: str = "npiperelay_checksums.txt"
    base_url: str = ""

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "HelperRelease":
        defaults = cls()
        return cls(
            repo=str(cfg.get("repo") or defaults.repo),
            version=str(cfg.get("version") or defaults.version),
            asset=str(cfg.get("asset") or defaults.asset),
            checksums=str(cfg.get("checksums") or defaults.checksums),
            base_url=str(cfg.get("base_url") or ""),
        )


def parse_checksum_manifest(text: str) -> dict[str, str]:
    entries: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        digest, name = parts
        # sha256sum marks binary mode with a leading '*'
        entries[name.strip().lstrip("*")] = digest.lower()
    return entries


def expected_checksum(manifest: str, filename: str) -> str:
    for name, digest in parse_checksum_manifest(manifest).items():
        if name == filename or name.endswith("/" + filename):
            return digest
    raise ChecksumMismatchError(f"no checksum entry for {filename} in manifest")


def sha256_file(path: str | Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_checksum(path: str | Path, expected: str) -> None:
    actual = sha256_file(path)
    if actual != expected.lower():
        raise ChecksumMismatchError(f"checksum mismatch for {Path(path).name}: expected={expected} actual={actual}")


class HelperInstaller:
    def __init__(
        self,
        release: HelperRelease,
        install_path: str | Path,
        retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
    ):
        self.logger = logging.getLogger("relay.helper")
        self.release = release
        self.install_path = Path(install_path)
        self.retries = max(0, retries)
        self.retry_delay = retry_delay
        self.timeout = timeout

    def _download_base(self) -> str:
        if self.release.base_url:
            return self.release.base_url.rstrip("/")
        return f"{GITHUB}/{self.release.repo}/releases/download/{self.release.version}"

    async def _latest_asset_urls(self, session: aiohttp.ClientSession) -> dict[str, str]:
        url = f"{GITHUB_API}/repos/{self.release.repo}/releases/latest"
        async with session.get(url, headers={"User-Agent": USER_AGENT}) as resp:
            resp.raise_for_status()
            data = await resp.json()
        urls: dict[str, str] = {}
        for asset in data.get("assets", []):
            name = str(asset.get("name", ""))
            for wanted in (self.release.asset, self.release.checksums):
                if name.endswith(wanted):
                    urls[wanted] = str(asset.get("browser_download_url", ""))
        return urls

    async def _asset_urls(self, session: aiohttp.ClientSession) -> tuple[str, str]:
        if self.release.version == "latest" and not self.release.base_url:
            urls = await self._latest_asset_urls(session)
            missing = [n for n in (self.release.asset, self.release.checksums) if not urls.get(n)]
            if missing:
                raise HelperInstallError(f"latest release lacks assets: {', '.join(missing)}")
            return urls[self.release.asset], urls[self.release.checksums]
        base = self._download_base()
        return f"{base}/{self.release.asset}", f"{base}/{self.release.checksums}"

    async def _fetch(self, session: aiohttp.ClientSession, url: str, dest: Path) -> None:
        last_exc: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                async with session.get(url, headers={"User-Agent": USER_AGENT}) as resp:
                    resp.raise_for_status()
                    with dest.open("wb") as f:
                        async for chunk in resp.content.iter_chunked(65536):
                            f.write(chunk)
                return
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_exc = exc
                self.logger.warning("download failed url=%s attempt=%s err=%s", url, attempt + 1, exc)
                if attempt < self.retries:
                    await asyncio.sleep(self.retry_delay)
        raise HelperInstallError(f"download failed: {url}: {last_exc}")

    async def _download_verified(self, workdir: Path) -> tuple[Path, str]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            asset_url, manifest_url = await self._asset_urls(session)
            manifest_path = workdir / self.release.checksums
            asset_path = workdir / self.release.asset
            await self._fetch(session, manifest_url, manifest_path)
            await self._fetch(session, asset_url, asset_path)
        expected = expected_checksum(manifest_path.read_text(encoding="utf-8", errors="replace"), self.release.asset)
        verify_checksum(asset_path, expected)
        return asset_path, expected

    def _install_file(self, src: Path) -> None:
        self.install_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.install_path.with_name(self.install_path.name + ".tmp")
        shutil.copyfile(src, tmp)
        os.chmod(tmp, 0o755)
        os.replace(tmp, self.install_path)

    async def ensure_installed(self) -> InstallOutcome:
        """Install the helper only when it is missing."""
        if self.install_path.exists():
            return InstallOutcome.PRESENT
        self.logger.info("downloading %s %s ...", self.release.repo, self.release.version)
        with tempfile.TemporaryDirectory(prefix="npiperelay-") as tmp:
            asset_path, _ = await self._download_verified(Path(tmp))
            self._install_file(asset_path)
        self.logger.info("helper installed: %s", self.install_path)
        return InstallOutcome.INSTALLED

    async def sync(self) -> InstallOutcome:
        """Install or replace the helper so it matches the pinned release."""
        with tempfile.TemporaryDirectory(prefix="npiperelay-") as tmp:
            asset_path, expected = await self._download_verified(Path(tmp))
            if self.install_path.exists():
                if sha256_file(self.install_path) == expected:
                    self.logger.info("helper %s: up to date", self.release.version)
                    return InstallOutcome.UP_TO_DATE
                self.logger.warning("helper: updating to %s", self.release.version)
                self._install_file(asset_path)
                return InstallOutcome.UPDATED
            self._install_file(asset_path)
        self.logger.info("helper %s: installed: %s", self.release.version, self.install_path)
        return InstallOutcome.INSTALLED
