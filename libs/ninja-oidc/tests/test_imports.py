"""Tests that all public API symbols are importable."""


def test_ninja_oidc_imports():
    import ninja_oidc

    assert ninja_oidc is not None


def test_public_api_exports():
    import ninja_oidc

    for name in ninja_oidc.__all__:
        assert getattr(ninja_oidc, name) is not None, name


def test_core_symbols():
    from ninja_oidc import (
        OidcClient,
        SdkConfiguration,
        SessionManager,
        TokenVerifier,
        create_oidc_router,
        generate_code_challenge,
        generate_code_verifier,
    )

    assert all(
        [
            OidcClient,
            SdkConfiguration,
            SessionManager,
            TokenVerifier,
            create_oidc_router,
            generate_code_challenge,
            generate_code_verifier,
        ]
    )
