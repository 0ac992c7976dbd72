from __future__ import annotations

import re
from datetime import UTC, datetime

import allure
import pytest

from conftest import FakeClock, job_request
from idem_guard.errors import InvalidKeyError
from idem_guard.keys import KeyGenerator, extract_components, is_valid_key, sha256_hex

pytestmark = [
    allure.epic("Idempotent Execution"),
    allure.feature("Key Derivation"),
]


def test_auto_key_has_kind_name_date_and_hash() -> None:
    generator = KeyGenerator(clock=FakeClock())

    key = generator.generate_key(job_request(target_name="nightly settlement.csv"))

    kind, name, day, digest = key.split(":")
    assert kind == "JOB"
    assert name == "NIGHTLY_SETTLEMENT_CSV"
    assert day == "20261018"
    assert digest == sha256_hex("tx:TX-1001")[:16]


def test_same_transaction_reference_yields_same_key() -> None:
    generator = KeyGenerator(clock=FakeClock())

    first = generator.generate_key(job_request())
    second = generator.generate_key(job_request(payload="different payload"))
    other = generator.generate_key(job_request(transaction_ref="TX-1002"))

    assert first == second
    assert first != other


def test_transaction_reference_outranks_content_hash() -> None:
    generator = KeyGenerator(clock=FakeClock())

    with_hash = generator.generate_key(job_request(content_hash="abc123"))
    hash_only = generator.generate_key(job_request(transaction_ref=None, content_hash="abc123"))

    assert with_hash == generator.generate_key(job_request())
    assert hash_only.endswith(sha256_hex("file:abc123")[:16])


def test_parameter_order_does_not_change_key() -> None:
    generator = KeyGenerator(clock=FakeClock())

    first = generator.generate_key(
        job_request(transaction_ref=None, parameters={"region": "EU", "batch": 7}),
    )
    second = generator.generate_key(
        job_request(transaction_ref=None, parameters={"batch": 7, "region": "EU"}),
    )

    assert first == second


def test_request_without_discriminator_is_not_deduplicated() -> None:
    generator = KeyGenerator(clock=FakeClock())

    first = generator.generate_key(job_request(transaction_ref=None))
    second = generator.generate_key(job_request(transaction_ref=None))

    assert first != second


def test_date_component_follows_injected_clock() -> None:
    clock = FakeClock()
    generator = KeyGenerator(clock=clock)

    today = generator.generate_key(job_request())
    clock.advance(days=1)
    tomorrow = generator.generate_key(job_request())

    assert today.split(":")[2] == "20261018"
    assert tomorrow.split(":")[2] == "20261019"


def test_client_key_is_sanitized_not_uppercased() -> None:
    generator = KeyGenerator(clock=FakeClock())

    key = generator.generate_key(job_request(client_provided_key="  order #42/abc "))

    assert key == "order__42_abc"


@pytest.mark.parametrize("raw", ["", "   "])
def test_blank_client_key_is_rejected(raw: str) -> None:
    generator = KeyGenerator(clock=FakeClock())

    with pytest.raises(InvalidKeyError):
        generator.generate_key(job_request(client_provided_key=raw))


def test_long_client_key_is_truncated_with_hash_suffix() -> None:
    generator = KeyGenerator(clock=FakeClock())
    raw = "a" * 200

    key = generator.sanitize_client_key(raw)

    assert len(key) == 128
    assert key == "a" * 120 + sha256_hex(raw)[:8]
    assert is_valid_key(key)


def test_correlation_id_format() -> None:
    generator = KeyGenerator(clock=lambda: datetime(2026, 10, 18, 9, 30, 5, tzinfo=UTC))

    correlation_id = generator.generate_correlation_id()

    assert re.fullmatch(r"IDEM_20261018_093005_[0-9a-f]{8}", correlation_id)
    assert correlation_id != generator.generate_correlation_id()


def test_key_validation_and_components() -> None:
    assert is_valid_key("JOB:NIGHTLY:20261018:0123456789abcdef")
    assert not is_valid_key("has space")
    assert not is_valid_key(None)
    assert not is_valid_key("x" * 129)

    components = extract_components("JOB:NIGHTLY:20261018:0123456789abcdef")
    assert components is not None
    assert components.target_kind == "JOB"
    assert components.target_name == "NIGHTLY"
    assert components.date_component == "20261018"
    assert components.content_hash == "0123456789abcdef"

    opaque = extract_components("client-key")
    assert opaque is not None
    assert opaque.target_kind is None
    assert extract_components("") is None
