import hashlib
import zlib
from pathlib import Path

import pytest

import libtwig


def plant(repo, frame, sha=b"\x01" * 20, compress=True):
    """Store frame at sha's path, bypassing object_write."""
    hexsha = sha.hex()
    path = Path(repo.gitdir, "objects", hexsha[:2], hexsha[2:])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(zlib.compress(frame) if compress else frame)
    return sha


class TestObjectWrite:
    def test_identifier_is_sha1_of_frame(self, repo) -> None:
        sha = libtwig.object_write(repo, "blob", b"hi")
        assert sha == hashlib.sha1(b"blob 2\x00hi").digest()

    def test_known_empty_blob_identifier(self, repo) -> None:
        sha = libtwig.object_write(repo, b"blob", b"")
        assert sha.hex() == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"

    def test_stores_compressed_frame_in_fanout_directory(self, repo) -> None:
        sha = libtwig.object_write(repo, "blob", b"hello")
        hexsha = sha.hex()
        path = Path(repo.gitdir, "objects", hexsha[:2], hexsha[2:])

        assert zlib.decompress(path.read_bytes()) == b"blob 5\x00hello"

    def test_writing_twice_is_idempotent(self, repo) -> None:
        first = libtwig.object_write(repo, "blob", b"same")
        hexsha = first.hex()
        path = Path(repo.gitdir, "objects", hexsha[:2], hexsha[2:])
        stored = path.read_bytes()

        assert libtwig.object_write(repo, "blob", b"same") == first
        assert path.read_bytes() == stored

    def test_rejects_unknown_kind(self, repo) -> None:
        with pytest.raises(libtwig.InvalidArgumentError):
            libtwig.object_write(repo, "note", b"x")


class TestObjectRead:
    def test_blob_round_trip(self, repo) -> None:
        sha = libtwig.object_write(repo, "blob", b"some\x00bytes")
        obj = libtwig.object_read(repo, sha)
        assert obj == libtwig.TwigBlob(b"some\x00bytes")

    @pytest.mark.parametrize("size", [0, 19, 21, 40])
    def test_rejects_bad_identifier_length(self, repo, size: int) -> None:
        with pytest.raises(libtwig.InvalidArgumentError):
            libtwig.object_read(repo, b"\x00" * size)

    def test_rejects_hex_string_identifier(self, repo) -> None:
        sha = libtwig.object_write(repo, "blob", b"hi")
        with pytest.raises(libtwig.InvalidArgumentError):
            libtwig.object_read(repo, sha.hex())

    def test_missing_object(self, repo) -> None:
        with pytest.raises(libtwig.ObjectNotFoundError):
            libtwig.object_read(repo, b"\x02" * 20)

    def test_missing_object_is_a_file_not_found_error(self, repo) -> None:
        with pytest.raises(FileNotFoundError):
            libtwig.object_read(repo, b"\x02" * 20)

    def test_declared_length_mismatch(self, repo) -> None:
        sha = plant(repo, b"blob 5\x00hi")
        with pytest.raises(libtwig.CorruptDataError, match="bad length"):
            libtwig.object_read(repo, sha)

    def test_declared_length_shorter_than_payload(self, repo) -> None:
        sha = plant(repo, b"blob 1\x00hi")
        with pytest.raises(libtwig.CorruptDataError):
            libtwig.object_read(repo, sha)

    def test_not_compressed(self, repo) -> None:
        sha = plant(repo, b"blob 2\x00hi", compress=False)
        with pytest.raises(libtwig.CorruptDataError, match="decompress"):
            libtwig.object_read(repo, sha)

    def test_unknown_kind(self, repo) -> None:
        sha = plant(repo, b"note 2\x00hi")
        with pytest.raises(libtwig.CorruptDataError, match="Unknown type"):
            libtwig.object_read(repo, sha)

    @pytest.mark.parametrize("frame", [b"blob", b"blob 2hi", b"blob x\x00hi", b"blob \x00"])
    def test_malformed_header(self, repo, frame: bytes) -> None:
        sha = plant(repo, frame)
        with pytest.raises(libtwig.CorruptDataError):
            libtwig.object_read(repo, sha)

    def test_tag_objects_are_not_supported(self, repo) -> None:
        sha = libtwig.object_write(repo, "tag", b"object abc\n")
        with pytest.raises(NotImplementedError):
            libtwig.object_read(repo, sha)

    def test_malformed_payload_raises_deserialize_error(self, repo) -> None:
        sha = libtwig.object_write(repo, "tree", b"100644 a.txt\x00short")
        with pytest.raises(libtwig.DeserializeError) as excinfo:
            libtwig.object_read(repo, sha)

        assert excinfo.value.fmt == b"tree"
        assert excinfo.value.sha == sha
        assert isinstance(excinfo.value, libtwig.CorruptDataError)

    def test_read_raw_returns_kind_and_payload(self, repo) -> None:
        sha = libtwig.object_write(repo, "commit", b"tree abc\n\nmsg")
        assert libtwig.object_read_raw(repo, sha) == (b"commit", b"tree abc\n\nmsg")


class TestObjectHash:
    def test_hash_without_repo_does_not_write(self, repo, tmp_path: Path) -> None:
        src = tmp_path / "file.txt"
        src.write_bytes(b"content")

        with src.open("rb") as fd:
            sha = libtwig.object_hash(fd, "blob")

        assert sha == hashlib.sha1(b"blob 7\x00content").digest()
        with pytest.raises(libtwig.ObjectNotFoundError):
            libtwig.object_read(repo, sha)

    def test_hash_with_repo_writes(self, repo, tmp_path: Path) -> None:
        src = tmp_path / "file.txt"
        src.write_bytes(b"content")

        with src.open("rb") as fd:
            sha = libtwig.object_hash(fd, b"blob", repo)

        assert libtwig.object_read(repo, sha).blobdata == b"content"

    def test_hash_validates_payload(self, tmp_path: Path) -> None:
        src = tmp_path / "tree"
        src.write_bytes(b"not a tree")

        with src.open("rb") as fd, pytest.raises(libtwig.CorruptDataError):
            libtwig.object_hash(fd, "tree")
