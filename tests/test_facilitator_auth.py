"""Tests for facilitator auth and credential loading."""

import base64

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

import shroud.facilitator_auth as facilitator_auth
from shroud.config import SHROUD_FACILITATOR_KEY_ID_ENV, SHROUD_FACILITATOR_KEY_SECRET_ENV


def _make_ec_private_key_pem() -> tuple[str, ec.EllipticCurvePrivateKey]:
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    return pem, key


@pytest.fixture
def no_env(monkeypatch):
    monkeypatch.delenv(SHROUD_FACILITATOR_KEY_ID_ENV, raising=False)
    monkeypatch.delenv(SHROUD_FACILITATOR_KEY_SECRET_ENV, raising=False)


def test_load_credentials_from_env(monkeypatch):
    monkeypatch.setenv(SHROUD_FACILITATOR_KEY_ID_ENV, "env-key-id")
    monkeypatch.setenv(SHROUD_FACILITATOR_KEY_SECRET_ENV, "env-key-secret")

    creds = facilitator_auth.load_facilitator_credentials()
    assert creds.api_key_id == "env-key-id"
    assert creds.api_key_secret == "env-key-secret"


def test_explicit_credentials_win(monkeypatch):
    monkeypatch.setenv(SHROUD_FACILITATOR_KEY_ID_ENV, "env-key-id")
    monkeypatch.setenv(SHROUD_FACILITATOR_KEY_SECRET_ENV, "env-key-secret")

    creds = facilitator_auth.load_facilitator_credentials(api_key_id="arg-id", api_key_secret="arg-secret")
    assert creds.api_key_id == "arg-id"
    assert creds.api_key_secret == "arg-secret"


def test_no_credentials_means_unauthenticated(no_env):
    assert facilitator_auth.load_facilitator_credentials() is None
    assert facilitator_auth.create_facilitator_auth("https://facilitator.example") is None


def test_partial_credentials_rejected(no_env, monkeypatch):
    monkeypatch.setenv(SHROUD_FACILITATOR_KEY_ID_ENV, "only-the-id")
    with pytest.raises(ValueError, match="incomplete"):
        facilitator_auth.load_facilitator_credentials()


def test_auth_provider_builds_endpoint_specific_signed_headers():
    api_key_id = "merchants/m-123/keys/k-456"
    private_pem, private_key = _make_ec_private_key_pem()
    provider = facilitator_auth.FacilitatorAuth(
        api_key_id=api_key_id,
        api_key_secret=private_pem,
        facilitator_url="https://facilitator.example/x402",
    )
    assert provider.algorithm == "ES256"

    headers = provider.get_auth_headers()
    correlation = headers.verify.get("Correlation-Context", "")
    assert "source=shroud" in correlation

    endpoint_matrix = [
        ("verify", headers.verify, "POST", "/x402/verify"),
        ("settle", headers.settle, "POST", "/x402/settle"),
        ("supported", headers.supported, "GET", "/x402/supported"),
    ]
    for name, endpoint_headers, method, path in endpoint_matrix:
        assert "Authorization" in endpoint_headers, f"{name} missing Authorization"
        token = endpoint_headers["Authorization"].split(" ", 1)[1]
        claims = jwt.decode(
            token,
            key=private_key.public_key(),
            algorithms=["ES256"],
            audience=facilitator_auth.FACILITATOR_AUDIENCE,
            options={"verify_exp": False, "verify_nbf": False},
        )
        assert claims["iss"] == facilitator_auth.FACILITATOR_ISSUER
        assert claims["sub"] == api_key_id
        assert claims["uris"] == [f"{method} facilitator.example{path}"]


def test_base64_ed25519_key():
    key = ed25519.Ed25519PrivateKey.generate()
    raw = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )
    secret = base64.b64encode(raw + public).decode()

    provider = facilitator_auth.FacilitatorAuth("kid", secret, "https://facilitator.example")
    assert provider.algorithm == "EdDSA"
    token = provider.headers_for("POST", "/settle")["Authorization"].split(" ", 1)[1]
    claims = jwt.decode(
        token,
        key=key.public_key(),
        algorithms=["EdDSA"],
        audience=facilitator_auth.FACILITATOR_AUDIENCE,
        options={"verify_exp": False, "verify_nbf": False},
    )
    assert claims["uris"] == ["POST facilitator.example/settle"]


def test_pem_with_literal_newline_escapes():
    private_pem, _ = _make_ec_private_key_pem()
    provider = facilitator_auth.FacilitatorAuth("kid", private_pem.replace("\n", "\\n"), "https://f.example")
    assert provider.algorithm == "ES256"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"api_key_id": "", "api_key_secret": "x", "facilitator_url": "https://f.example"},
        {"api_key_id": "kid", "api_key_secret": "", "facilitator_url": "https://f.example"},
        {"api_key_id": "kid", "api_key_secret": "not a key", "facilitator_url": "https://f.example"},
        {"api_key_id": "kid", "api_key_secret": "x", "facilitator_url": "not-a-url"},
    ],
)
def test_invalid_inputs_rejected(kwargs):
    with pytest.raises(ValueError):
        facilitator_auth.FacilitatorAuth(**kwargs)
