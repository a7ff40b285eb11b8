from __future__ import annotations

from governance.core.privacy.consent import check_required_consents


def test_latest_decision_per_type_wins(governed_store, clock):
    governed_store.add_consent(user_id="u1", consent_type="marketing", granted=True)
    governed_store.add_consent(user_id="u1", consent_type="photos", granted=True)
    clock.advance(60)
    governed_store.add_consent(user_id="u1", consent_type="marketing", granted=False)
    governed_store.add_consent(user_id="u2", consent_type="terms", granted=True)

    assert governed_store.latest_consents("u1", ["marketing", "photos", "terms"]) == {"marketing": False, "photos": True}
    assert governed_store.latest_consents("u1", []) == {}


def test_same_instant_decisions_resolve_by_insertion_order(governed_store):
    governed_store.add_consent(user_id="u1", consent_type="terms", granted=False)
    governed_store.add_consent(user_id="u1", consent_type="terms", granted=True)
    assert governed_store.latest_consents("u1", ["terms"]) == {"terms": True}


def test_required_consents_report_what_is_missing(governed_store, clock):
    governed_store.add_consent(user_id="u1", consent_type="terms", granted=True)
    governed_store.add_consent(user_id="u1", consent_type="privacy_policy", granted=True)

    ok = check_required_consents(governed_store, "u1", ["terms", "privacy_policy", "terms"])
    assert ok.has_all
    assert ok.to_dict() == {"hasAllConsents": True, "missingConsents": [], "consents": {"privacy_policy": True, "terms": True}}

    clock.advance(60)
    governed_store.add_consent(user_id="u1", consent_type="privacy_policy", granted=False)
    check = check_required_consents(governed_store, "u1", ["terms", "privacy_policy", "photos"])
    assert not check.has_all
    assert check.missing == ["privacy_policy", "photos"]
    assert check.consents == {"terms": True, "privacy_policy": False}

    assert check_required_consents(governed_store, "nobody", ["terms"]).missing == ["terms"]
