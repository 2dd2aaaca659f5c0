"""可下载对象

所有下载对象满足同一接口（Downloadable 协议）:
identity() / name / download_type / url / mirrors / checksum / cached_download /
downloaded() / fetch() / clear_cache() / verify_download_integrity()

下载流程: 依次尝试主 URL 与镜像，分块写入 <文件>.incomplete，完成后 rename 到位，
再校验 SHA-256。每个分块边界检查取消事件。
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import urllib.error
import urllib.request
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlparse

from cellar.core.exceptions import (
    BottleManifestError,
    ChecksumMismatchError,
    DownloadCancelledError,
    DownloadError,
    ValidationError,
)
from cellar.utils.net import DOWNLOAD_SCHEMES, validate_url_scheme

if TYPE_CHECKING:
    from cellar.core.formula import BottleSpec, Formula

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_ARCHIVE_EXTENSIONS = (".tar.gz", ".tar.xz", ".tar.bz2", ".tar.zst", ".tgz", ".zip")


class Downloadable(Protocol):
    """下载队列可处理的对象"""

    name: str
    download_type: str
    url: str
    mirrors: tuple[str, ...]
    checksum: str

    @property
    def cached_download(self) -> Path: ...

    def identity(self) -> tuple[str, Path]: ...

    def downloaded(self) -> bool: ...

    def fetch(
        self, *, timeout: float | None = None, quiet: bool = False,
        cancel: threading.Event | None = None,
    ) -> Path: ...

    def clear_cache(self) -> None: ...

    def verify_download_integrity(self, path: Path) -> None: ...


def sha256_of(path: Path) -> str:
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def archive_extension(url: str) -> str:
    """从 URL 推断归档扩展名（保留 .tar.gz 这类双扩展名）"""
    path = urlparse(url).path.lower()
    for ext in _ARCHIVE_EXTENSIONS:
        if path.endswith(ext):
            return ext
    return PurePosixPath(path).suffix


class UrlDownload:
    """通过 URL 下载到缓存目录中确定性文件名的通用实现"""

    download_type = "url"

    def __init__(
        self, name: str, url: str, *,
        cache_dir: Path,
        filename: str,
        checksum: str = "",
        mirrors: tuple[str, ...] | list[str] = (),
        version: str = "",
    ) -> None:
        self.name = name
        self.url = url
        self.mirrors = tuple(mirrors)
        self.checksum = checksum
        self.version = version
        self.cache_dir = Path(cache_dir)
        self.filename = filename

    @property
    def cached_download(self) -> Path:
        return self.cache_dir / self.filename

    @property
    def incomplete_path(self) -> Path:
        return self.cache_dir / f"{self.filename}.incomplete"

    def identity(self) -> tuple[str, Path]:
        return self.download_type, self.cached_download

    def downloaded(self) -> bool:
        return self.cached_download.is_file()

    def fetch(
        self, *, timeout: float | None = None, quiet: bool = False,
        cancel: threading.Event | None = None,
    ) -> Path:
        """下载（已缓存则跳过）并校验，返回缓存路径"""
        target = self.cached_download
        if self.downloaded():
            if not quiet:
                logger.info("已缓存: %s", target)
        else:
            errors: list[str] = []
            urls = [self.url, *self.mirrors]
            for i, url in enumerate(urls):
                try:
                    self._download(url, timeout=timeout, quiet=quiet, cancel=cancel)
                    break
                except DownloadError as e:
                    errors.append(str(e))
                    if i + 1 < len(urls):
                        logger.warning("%s，尝试下一个镜像", e)
            else:
                raise DownloadError(f"{self.name} 下载失败: {'; '.join(errors)}")
        self.verify_download_integrity(target)
        return target

    def _download(
        self, url: str, *, timeout: float | None, quiet: bool,
        cancel: threading.Event | None,
    ) -> None:
        try:
            validate_url_scheme(url, context=f"{self.download_type} {self.name}", allowed=DOWNLOAD_SCHEMES)
        except ValidationError as e:
            raise DownloadError(str(e)) from e
        if not quiet:
            logger.info("下载: %s", url)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        partial = self.incomplete_path
        try:
            with urllib.request.urlopen(url, timeout=timeout) as resp, open(partial, "wb") as f:  # nosec B310
                while True:
                    if cancel is not None and cancel.is_set():
                        raise DownloadCancelledError(f"{self.name} 下载已取消")
                    chunk = resp.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
        except DownloadCancelledError:
            partial.unlink(missing_ok=True)
            raise
        except (urllib.error.URLError, OSError, ValueError) as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"下载失败: {url} - {e}") from e
        partial.replace(self.cached_download)
        if not quiet:
            logger.info("已保存: %s", self.cached_download)

    def verify_download_integrity(self, path: Path) -> None:
        if not self.checksum:
            logger.debug("%s 未声明校验和，跳过校验", self.name)
            return
        actual = sha256_of(path)
        if actual != self.checksum:
            raise ChecksumMismatchError(path, self.checksum, actual)

    def clear_cache(self) -> None:
        self.cached_download.unlink(missing_ok=True)
        self.incomplete_path.unlink(missing_ok=True)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self.cached_download.name}>"


class BottleDownload(UrlDownload):
    """预构建产物（瓶子）

    temp_cellar 不为空时，队列可在下载后把瓶子预解压到
    <temp_cellar>/<name>/<pkg_version> 并放置 .poured 标记。
    """

    download_type = "bottle"

    def __init__(
        self, formula: Formula, bottle: BottleSpec, cache_dir: Path, *,
        temp_cellar: Path | None = None,
    ) -> None:
        super().__init__(
            formula.full_name, bottle.url,
            cache_dir=cache_dir,
            filename=bottle.filename(formula.name, formula.pkg_version),
            checksum=bottle.sha256,
            mirrors=bottle.mirrors,
            version=str(formula.pkg_version),
        )
        self.formula_name = formula.name
        self.bottle = bottle
        self.temp_cellar = Path(temp_cellar) if temp_cellar else None

    @property
    def poured_keg(self) -> Path | None:
        if self.temp_cellar is None:
            return None
        return self.temp_cellar / self.formula_name / self.version


class SourceDownload(UrlDownload):
    """源码归档"""

    download_type = "source"

    def __init__(self, formula: Formula, cache_dir: Path) -> None:
        super().__init__(
            formula.full_name, formula.url,
            cache_dir=cache_dir,
            filename=f"{formula.name}--{formula.pkg_version}{archive_extension(formula.url)}",
            checksum=formula.sha256,
            mirrors=formula.mirrors,
            version=str(formula.pkg_version),
        )


class BottleManifestDownload(UrlDownload):
    """瓶子清单（JSON），记录运行期依赖版本与构建平台"""

    download_type = "manifest"

    def __init__(self, formula: Formula, bottle: BottleSpec, cache_dir: Path) -> None:
        super().__init__(
            formula.full_name, bottle.manifest_url,
            cache_dir=cache_dir,
            filename=f"{formula.name}--{formula.pkg_version}.{bottle.tag}.bottle_manifest.json",
            version=str(formula.pkg_version),
        )

    def fetch(
        self, *, timeout: float | None = None, quiet: bool = False,
        cancel: threading.Event | None = None,
    ) -> Path:
        path = super().fetch(timeout=timeout, quiet=quiet, cancel=cancel)
        self.manifest()
        return path

    def manifest(self) -> dict[str, Any]:
        """解析已下载的清单，格式错误抛出 BottleManifestError"""
        try:
            data = json.loads(self.cached_download.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BottleManifestError(f"{self.name} 的瓶子清单无法解析: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("runtime_dependencies", []), list):
            raise BottleManifestError(f"{self.name} 的瓶子清单格式错误")
        return data


class LocalArtifact:
    """本地已有的产物文件（如 --force-bottle 指定的本地瓶子），不会被清理"""

    download_type = "local"

    def __init__(self, name: str, path: Path, *, checksum: str = "") -> None:
        self.name = name
        self.path = Path(path)
        self.url = self.path.as_uri() if self.path.is_absolute() else str(self.path)
        self.mirrors: tuple[str, ...] = ()
        self.checksum = checksum

    @property
    def cached_download(self) -> Path:
        return self.path

    def identity(self) -> tuple[str, Path]:
        return self.download_type, self.path

    def downloaded(self) -> bool:
        return self.path.is_file()

    def fetch(
        self, *, timeout: float | None = None, quiet: bool = False,
        cancel: threading.Event | None = None,
    ) -> Path:
        if not self.downloaded():
            raise DownloadError(f"本地产物不存在: {self.path}")
        self.verify_download_integrity(self.path)
        return self.path

    def verify_download_integrity(self, path: Path) -> None:
        if self.checksum:
            actual = sha256_of(path)
            if actual != self.checksum:
                raise ChecksumMismatchError(path, self.checksum, actual)

    def clear_cache(self) -> None:
        """本地文件属于用户，不做删除"""

    def __repr__(self) -> str:
        return f"<LocalArtifact {self.name} {self.path}>"
