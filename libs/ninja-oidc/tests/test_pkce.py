"""Tests for PKCE verifier and challenge generation."""

import re

import pytest

from ninja_oidc.errors import PKCELengthError
from ninja_oidc.pkce import generate_code_challenge, generate_code_verifier

_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]+$")


def test_default_verifier_is_128_chars():
    verifier = generate_code_verifier()
    assert len(verifier) == 128
    assert _VERIFIER_RE.match(verifier)


@pytest.mark.parametrize("length", [43, 64, 100, 128])
def test_verifier_has_exact_length(length: int):
    verifier = generate_code_verifier(length)
    assert len(verifier) == length
    assert _VERIFIER_RE.match(verifier)


@pytest.mark.parametrize("length", [0, 42, 129, 1000])
def test_verifier_length_out_of_range_raises(length: int):
    with pytest.raises(PKCELengthError) as exc_info:
        generate_code_verifier(length)
    assert exc_info.value.length == length
    assert isinstance(exc_info.value, ValueError)


def test_verifiers_are_random():
    assert len({generate_code_verifier(43) for _ in range(50)}) == 50


def test_challenge_known_vector():
    assert (
        generate_code_challenge("Q6D5aiJHs6QdEILJoCz5pFw3Wmi9UiP8ovQbvlgd3Gc")
        == "f3X4JO4FpNodO254hdZAMCYKE4fzFn8ezYlLUr5qjH4"
    )


def test_challenge_is_deterministic():
    verifier = generate_code_verifier()
    assert generate_code_challenge(verifier) == generate_code_challenge(verifier)
    assert generate_code_challenge(verifier) != generate_code_challenge(generate_code_verifier())


def test_challenge_is_unpadded_base64url():
    challenge = generate_code_challenge(generate_code_verifier())
    assert len(challenge) == 43
    assert "=" not in challenge
    assert "+" not in challenge and "/" not in challenge
