"""URL 协议校验测试"""

import pytest

from cellar.core.exceptions import ValidationError
from cellar.utils.net import DOWNLOAD_SCHEMES, validate_url_scheme


class TestValidateUrlScheme:
    def test_https_ok(self) -> None:
        validate_url_scheme("https://example.com/lib-1.0.tar.gz")

    def test_file_rejected_by_default(self) -> None:
        with pytest.raises(ValueError, match="不允许的 URL 协议"):
            validate_url_scheme("file:///etc/passwd")

    def test_file_allowed_for_downloads(self) -> None:
        validate_url_scheme("file:///srv/mirror/lib.tar.gz", allowed=DOWNLOAD_SCHEMES)

    def test_ftp_rejected_for_downloads(self) -> None:
        with pytest.raises(ValidationError, match="不允许的 URL 协议"):
            validate_url_scheme("ftp://evil.com/payload", allowed=DOWNLOAD_SCHEMES)

    def test_empty_scheme_rejected(self) -> None:
        with pytest.raises(ValueError, match="不允许的 URL 协议"):
            validate_url_scheme("/local/path")

    def test_context_in_error(self) -> None:
        with pytest.raises(ValueError, match="lib 下载"):
            validate_url_scheme("gopher://x", context="lib 下载")
