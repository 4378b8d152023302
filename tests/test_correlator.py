from wa_tg_bridge.correlator import MessageCorrelator
from wa_tg_bridge.vault import ContentVault

VAULT = ContentVault("correlator-test-secret-key")


def test_record_and_lookup_both_ways(db):
    correlator = MessageCorrelator(db)
    correlator.record("WA1", 10, -100, 7, None, "incoming", "image", "caption")

    by_primary = correlator.by_primary_id("WA1")
    assert by_primary.secondary_msg_id == 10
    assert by_primary.secondary_chat_id == "-100"
    assert by_primary.message_kind == "image"

    assert correlator.by_secondary_id(10, -100).primary_msg_id == "WA1"
    assert correlator.knows("WA1")
    assert not correlator.knows("WA2")
    assert correlator.by_primary_id("WA2") is None


def test_rerecord_keeps_content_when_new_content_missing(db):
    correlator = MessageCorrelator(db)
    correlator.record("WA1", 10, -100, 7, None, "incoming", "text", "first")
    correlator.record("WA1", 20, -100, 7, None, "incoming", "text", None)

    mapping = correlator.by_primary_id("WA1")
    assert mapping.secondary_msg_id == 20
    assert mapping.content == "first"


def test_rerecord_keeps_content_when_new_content_empty(db):
    correlator = MessageCorrelator(db)
    correlator.record("WA1", 10, -100, 7, None, "incoming", "text", "first")
    correlator.record("WA1", 20, -100, 7, None, "incoming", "text", "")

    mapping = correlator.by_primary_id("WA1")
    assert mapping.secondary_msg_id == 20
    assert mapping.content == "first"


def test_update_content(db):
    correlator = MessageCorrelator(db)
    correlator.record("WA1", 10, -100, 7, None, "incoming", "text", "before")
    assert correlator.update_content("WA1", "after")
    assert correlator.by_primary_id("WA1").content == "after"
    assert not correlator.update_content("missing", "x")


def test_find_messages_matches_decrypted_content(db):
    correlator = MessageCorrelator(db)
    contact = db.upsert_contact("111@s.whatsapp.net", platform_name="Alice")
    correlator.record("WA1", 10, -100, 7, contact["id"], "incoming", "text",
                      VAULT.encrypt("Lunch at noon?"))
    correlator.record("WA2", 11, -100, 7, contact["id"], "outgoing", "text",
                      VAULT.encrypt("Sure, see you"))
    correlator.record("WA3", 12, -100, 7, contact["id"], "incoming", "text",
                      "legacy plaintext about lunch")

    results = correlator.find_messages("LUNCH", VAULT)

    assert {r["primary_msg_id"] for r in results} == {"WA1", "WA3"}
    texts = {r["primary_msg_id"]: r["text"] for r in results}
    assert texts["WA1"] == "Lunch at noon?"
    assert results[0]["platform_name"] == "Alice"


def test_find_messages_respects_limit(db):
    correlator = MessageCorrelator(db)
    for i in range(5):
        correlator.record(f"WA{i}", i, -100, 7, None, "incoming", "text", VAULT.encrypt(f"ping {i}"))

    assert len(correlator.find_messages("ping", VAULT, limit=3)) == 3


def test_reactions(db):
    correlator = MessageCorrelator(db)
    correlator.record_reaction("WA1", "👍", "me", 10, -100)
    correlator.record_reaction("WA1", "🔥", "me", 10, -100)

    reactions = correlator.reactions_for("WA1")
    assert [(r.emoji, r.reactor_identity) for r in reactions] == [("🔥", "me")]

    assert correlator.remove_reaction("WA1", "me")
    assert correlator.reactions_for("WA1") == []
