import pytest

from backup.codec import Codec, canonical_bytes
from backup.errors import IntegrityError
from backup.types import compression_ratio
from catalog.entities import Dataset, Product

from conftest import make_dataset


def test_encode_decode_round_trip() -> None:
    codec = Codec()
    dataset = make_dataset()

    encoded = codec.encode(dataset)

    assert encoded.original_size == len(canonical_bytes(dataset))
    assert encoded.compressed_size == len(encoded.payload)
    assert len(encoded.checksum) == 64
    assert codec.decode(encoded.payload, encoded.checksum) == dataset


def test_checksum_depends_only_on_logical_content() -> None:
    codec = Codec()
    dataset = make_dataset()
    shuffled = Dataset(
        products=tuple(reversed(dataset.products)),
        suppliers=dataset.suppliers,
        tree_nodes=tuple(reversed(dataset.tree_nodes)),
        custom_field_definitions=dataset.custom_field_definitions,
        app_settings=tuple(reversed(dataset.app_settings)),
    )

    first = codec.encode(dataset)
    second = codec.encode(shuffled)

    assert first.checksum == second.checksum
    assert first.payload == second.payload


def test_empty_dataset_round_trip() -> None:
    codec = Codec()
    encoded = codec.encode(Dataset())

    decoded = codec.decode(encoded.payload, encoded.checksum)

    assert decoded.counts() == {
        "products": 0,
        "suppliers": 0,
        "treeNodes": 0,
        "customFieldDefinitions": 0,
        "appSettings": 0,
    }


def test_every_flipped_byte_is_detected() -> None:
    codec = Codec()
    encoded = codec.encode(make_dataset())

    for index in range(len(encoded.payload)):
        corrupted = bytearray(encoded.payload)
        corrupted[index] ^= 0x01
        with pytest.raises(IntegrityError):
            codec.decode(bytes(corrupted), encoded.checksum, operation="restore")


def test_truncated_and_extended_payloads_are_rejected() -> None:
    codec = Codec()
    encoded = codec.encode(make_dataset())

    with pytest.raises(IntegrityError, match="truncated"):
        codec.verify_payload(encoded.payload[:-6], encoded.checksum)
    with pytest.raises(IntegrityError, match="trailing"):
        codec.verify_payload(encoded.payload + b"\x00", encoded.checksum)


def test_checksum_mismatch_reports_operation() -> None:
    codec = Codec()
    encoded = codec.encode(make_dataset())

    with pytest.raises(IntegrityError) as excinfo:
        codec.decode(encoded.payload, "0" * 64, operation="preview")

    assert excinfo.value.operation == "preview"
    assert "checksum mismatch" in excinfo.value.message


def test_invalid_compression_level() -> None:
    with pytest.raises(ValueError):
        Codec(compression_level=12)


def test_compression_ratio_rounds_half_up() -> None:
    assert compression_ratio(0, 0) == 0
    assert compression_ratio(100, 25) == 75
    assert compression_ratio(200, 101) == 50
    assert compression_ratio(3, 2) == 33
    assert compression_ratio(100, 100) == 0


def test_rows_with_missing_or_text_ids_still_encode() -> None:
    codec = Codec()
    dataset = Dataset(
        products=(
            Product(id=None, product_id="P-x", name="No id", node_id="N-food"),
            Product(id="B-7", product_id="P-y", name="Text id", node_id="N-food"),
            Product(id=None, product_id="P-z", name="Also no id", node_id="N-food"),
            Product(id=10, product_id="P-10", name="Ten", node_id="N-food"),
            Product(id=2, product_id="P-2", name="Two", node_id="N-food"),
        )
    )

    encoded = codec.encode(dataset)
    decoded = codec.decode(encoded.payload, encoded.checksum)

    assert [product.id for product in decoded.products][:3] == [2, 10, "B-7"]
    assert [product.id for product in decoded.products][3:] == [None, None]
