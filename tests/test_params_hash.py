from __future__ import annotations

from imagejobs_cli.provenance import hash_parameters


class TestHashParameters:
    def test_insertion_order_does_not_matter(self) -> None:
        a = {"prompt": "cat", "size": "1024x1024", "sample_count": 2}
        b = {"sample_count": 2, "size": "1024x1024", "prompt": "cat"}
        assert hash_parameters(a) == hash_parameters(b)

    def test_nested_keys_are_sorted(self) -> None:
        a = {"outer": {"x": 1, "y": 2}}
        b = {"outer": {"y": 2, "x": 1}}
        assert hash_parameters(a) == hash_parameters(b)

    def test_values_change_hash(self) -> None:
        assert hash_parameters({"q": "low"}) != hash_parameters({"q": "high"})

    def test_hex_sha256(self) -> None:
        digest = hash_parameters({})
        assert len(digest) == 64
        assert int(digest, 16) >= 0

    def test_non_ascii_prompt(self) -> None:
        assert hash_parameters({"prompt": "猫"}) == hash_parameters({"prompt": "猫"})
