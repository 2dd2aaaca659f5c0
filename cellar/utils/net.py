"""网络工具：URL 安全校验"""

from __future__ import annotations

from urllib.parse import urlparse

from cellar.core.exceptions import ValidationError

_ALLOWED_SCHEMES = frozenset(("http", "https"))

# 下载允许 file://，本地镜像和 CI 预置的瓶子走这条路径
DOWNLOAD_SCHEMES = frozenset(("http", "https", "file"))


def validate_url_scheme(
    url: str, *, context: str = "",
    allowed: frozenset[str] = _ALLOWED_SCHEMES,
) -> None:
    """校验 URL 协议在白名单内，防止非预期协议访问

    Raises:
        ValidationError: URL scheme 不在白名单内
    """
    parsed = urlparse(url)
    if parsed.scheme not in allowed:
        label = f" ({context})" if context else ""
        raise ValidationError(
            f"不允许的 URL 协议 '{parsed.scheme}'{label}，"
            f"仅支持 {'/'.join(sorted(allowed))}: {url}"
        )
