import base64

from wa_tg_bridge.vault import ContentVault


def test_round_trip():
    vault = ContentVault("a-sufficiently-long-secret-key")
    sealed = vault.encrypt("hello there")

    assert sealed != "hello there"
    assert sealed.count(":") == 2
    assert ContentVault.looks_encrypted(sealed)
    assert vault.decrypt(sealed) == "hello there"


def test_fresh_nonce_per_call():
    vault = ContentVault("a-sufficiently-long-secret-key")
    assert vault.encrypt("same") != vault.encrypt("same")


def test_plaintext_passes_through_decrypt():
    vault = ContentVault("a-sufficiently-long-secret-key")
    assert vault.decrypt("just text") == "just text"
    assert vault.decrypt("a:b") == "a:b"
    assert vault.decrypt("") == ""
    assert vault.decrypt(None) is None


def test_empty_input_is_not_encrypted():
    vault = ContentVault("key")
    assert vault.encrypt("") == ""
    assert vault.encrypt(None) is None


def test_wrong_key_returns_input_unchanged():
    sealed = ContentVault("first-secret-key-123").encrypt("secret words")
    assert ContentVault("other-secret-key-456").decrypt(sealed) == sealed


def test_unicode_content():
    vault = ContentVault("a-sufficiently-long-secret-key")
    text = "שלום 👋 مرحبا"
    assert vault.decrypt(vault.encrypt(text)) == text


def test_wrong_length_segments_pass_through():
    vault = ContentVault("a-sufficiently-long-secret-key")
    assert vault.decrypt("QUJD:QUJD:QUJD") == "QUJD:QUJD:QUJD"
    assert not ContentVault.looks_encrypted("QUJD:QUJD:QUJD")


def test_looks_encrypted_rejects_plaintext():
    assert not ContentVault.looks_encrypted("a:b:c")
    assert not ContentVault.looks_encrypted("hello there")
    assert not ContentVault.looks_encrypted("")
    assert not ContentVault.looks_encrypted(None)


def test_tampered_ciphertext_returns_input_unchanged():
    vault = ContentVault("a-sufficiently-long-secret-key")
    nonce, tag, ciphertext = vault.encrypt("secret words").split(":")
    flipped = bytearray(base64.b64decode(ciphertext))
    flipped[0] ^= 0x01
    tampered = ":".join([nonce, tag, base64.b64encode(bytes(flipped)).decode("ascii")])

    assert ContentVault.looks_encrypted(tampered)
    assert vault.decrypt(tampered) == tampered
