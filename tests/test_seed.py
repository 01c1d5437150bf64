from clinic_booking.seed import INSURANCE_PROVIDERS, MEDICATIONS, ROOMS, SPECIALIZATIONS, seed_base
from clinic_booking.services import list_insurance_providers, list_medications, list_rooms, list_specializations


def test_seed_is_idempotent():
    seed_base()
    seed_base()

    assert sorted(s["name"] for s in list_specializations()) == sorted(SPECIALIZATIONS)
    assert len(list_medications()) == len(MEDICATIONS)
    assert len(list_insurance_providers()) == len(INSURANCE_PROVIDERS)
    assert [r["name"] for r in list_rooms()] == sorted(name for name, _, _ in ROOMS)


def test_seeded_values_keep_their_enums():
    seed_base()
    forms = {m["name"]: m["form"] for m in list_medications()}
    assert forms["Amoxicillin"] == "capsule"
    assert {r["name"]: r["type"] for r in list_rooms()}["Lab"] == "lab"
