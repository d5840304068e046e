from services.fingerprint import CHUNK_SIZE, fingerprint


def test_known_digest() -> None:
    assert fingerprint(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_identical_bytes_give_identical_digest() -> None:
    data = b"\xff\xd8" + b"x" * (3 * CHUNK_SIZE + 17)
    assert fingerprint(data) == fingerprint(bytes(data))


def test_one_byte_difference_changes_digest() -> None:
    data = bytearray(b"\x00" * (2 * CHUNK_SIZE))
    original = fingerprint(bytes(data))
    data[-1] = 1
    assert fingerprint(bytes(data)) != original


def test_empty_input() -> None:
    assert fingerprint(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
