# tests/test_storage.py — Storage paths and signed download links
import pytest

from storage import (
    InvalidStoragePath, build_storage_path, is_within_space, sanitize_filename,
    sign_download_url, validate_storage_path, verify_download_signature,
)

SPACE = "3b1d4c2e-5f6a-4b7c-8d9e-0f1a2b3c4d5e"


class TestPathValidation:
    @pytest.mark.parametrize("path", [
        "",
        "../secrets.txt",
        "space/../../etc/passwd",
        "space/./file.pdf",
        "/etc/passwd",
        "\\server\\share",
        "C:/Windows/system32",
        "space\\file.pdf",
        "space/file\0.pdf",
        "///",
    ])
    def test_rejected(self, path):
        with pytest.raises(InvalidStoragePath):
            validate_storage_path(path)

    def test_duplicate_slashes_collapsed(self):
        assert validate_storage_path("space//block///file.pdf") == "space/block/file.pdf"

    def test_within_space(self):
        assert is_within_space(f"{SPACE}/block/file.pdf", SPACE)
        assert not is_within_space("another/block/file.pdf", SPACE)
        assert not is_within_space(f"{SPACE}-evil/block/file.pdf", SPACE)

    @pytest.mark.parametrize("name,expected", [
        ("report.pdf", "report.pdf"),
        ("../../etc/passwd", "etcpasswd"),
        ('bad<>:"|?*name.txt', "badname.txt"),
        ("...", "file"),
        ("", "file"),
    ])
    def test_sanitize_filename(self, name, expected):
        assert sanitize_filename(name) == expected

    def test_built_paths_are_valid_and_scoped(self):
        path = build_storage_path(SPACE, "block-1", "../Q1 report.pdf")
        assert is_within_space(path, SPACE)
        assert path.endswith("-Q1 report.pdf")


class TestSignedUrls:
    def test_sign_and_verify(self):
        url = sign_download_url(f"{SPACE}/b/contract.pdf", expires_in=60, now=1_700_000_000)
        assert url.startswith(f"/files/{SPACE}/b/contract.pdf?expires=1700000060&signature=")
        signature = url.rsplit("signature=", 1)[1]

        assert verify_download_signature(f"{SPACE}/b/contract.pdf", 1700000060, signature, now=1_700_000_000)
        assert not verify_download_signature(f"{SPACE}/b/other.pdf", 1700000060, signature, now=1_700_000_000)
        assert not verify_download_signature(f"{SPACE}/b/contract.pdf", 1700000061, signature, now=1_700_000_000)

    def test_expired_link(self):
        url = sign_download_url("s/b/f.pdf", expires_in=60, now=1_700_000_000)
        signature = url.rsplit("signature=", 1)[1]
        assert not verify_download_signature("s/b/f.pdf", 1700000060, signature, now=1_700_000_061)

    def test_spaces_are_quoted(self):
        assert "/files/s/b/my%20file.pdf?" in sign_download_url("s/b/my file.pdf")

    def test_invalid_path_never_verifies(self):
        assert not verify_download_signature("../x", 9999999999, "deadbeef")
        with pytest.raises(InvalidStoragePath):
            sign_download_url("/abs/x.pdf")
