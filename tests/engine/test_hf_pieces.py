import pytest

from pocketlm.engine.adapters.hf import (
    TransformersAdapter,
    TransformersVisionAdapter,
    bytes_to_unicode,
    piece_bytes,
    unicode_to_bytes,
)
from pocketlm.engine.registry import get_adapter, list_backends


def _byte_level(raw: bytes) -> str:
    table = bytes_to_unicode()
    return "".join(table[b] for b in raw)


def test_byte_table_is_a_bijection_over_all_bytes():
    table = bytes_to_unicode()
    assert len(table) == 256
    assert len(set(table.values())) == 256
    assert all(unicode_to_bytes()[ch] == b for b, ch in table.items())


def test_byte_level_space_prefix():
    assert piece_bytes("Ġhello", byte_level=True) == b" hello"


def test_byte_level_piece_can_end_mid_character():
    raw = "世".encode("utf-8")
    assert piece_bytes(_byte_level(raw[:2]), byte_level=True) == raw[:2]
    assert piece_bytes(_byte_level(raw), byte_level=True) == raw


def test_sentencepiece_pieces():
    assert piece_bytes("▁world", byte_level=False) == b" world"
    assert piece_bytes("<0xE4>", byte_level=False) == b"\xe4"
    assert piece_bytes("<0x0A>", byte_level=True) == b"\n"


def test_special_tokens_render_literally():
    assert piece_bytes("<|im_end|>", byte_level=True, special=True) == b"<|im_end|>"


def test_missing_token_is_empty():
    assert piece_bytes(None, byte_level=True) == b""


def test_registry_resolves_transformers_backends():
    assert set(list_backends()) >= {"transformers", "transformers-vision"}
    assert isinstance(get_adapter("transformers"), TransformersAdapter)
    vision = get_adapter("transformers-vision")
    assert isinstance(vision, TransformersVisionAdapter)
    assert vision.supports_multimodal is True


def test_registry_rejects_unknown_backend():
    with pytest.raises(ValueError, match="Unknown backend"):
        get_adapter("gguf")


def test_adapter_requires_load():
    adapter = TransformersAdapter()
    with pytest.raises(RuntimeError, match="Model not loaded"):
        adapter.tokenize("hi", add_special=True, parse_special=True)
    assert adapter.is_eog(2) is False
    assert adapter.max_position(0) == -1
    assert adapter.model_info["loaded"] is False
