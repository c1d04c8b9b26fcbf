import uuid

import pytest

from cellops import models, schemas
from cellops.services import lineage
from cellops.services.errors import ConflictError, ReferenceNotFound, ValidationError

from .conftest import make_container, make_culture, make_user


def _passage(db, culture, sources, ratio="1:2", actor=None):
    actor = actor or make_user(db)
    outcome = lineage.passage(
        db,
        culture.id,
        schemas.PassageRequest(source_container_ids=[s.id for s in sources], split_ratio=ratio),
        actor,
    )
    db.commit()
    return outcome


def test_parse_split_ratio():
    assert lineage.parse_split_ratio("1:3") == 3
    assert lineage.parse_split_ratio(" 1 : 10 ") == 10
    for bad in ("2:3", "1:0", "1:101", "three", "", "1:2:3"):
        with pytest.raises(ValidationError):
            lineage.parse_split_ratio(bad)


def test_passage_two_flasks_one_to_three(db):
    culture = make_culture(db, passage=2)
    a = make_container(db, culture, index=1)
    b = make_container(db, culture, index=2)

    outcome = _passage(db, culture, [a, b], "1:3")

    assert len(outcome.created) == 6
    assert culture.current_passage == 3
    assert all(c.status == "active" and c.passage_number == 3 for c in outcome.created)
    for source in (a, b):
        children = [c for c in outcome.created if c.parent_container_id == source.id]
        assert sorted(c.split_index for c in children) == [1, 2, 3]
        assert source.status == "disposed"
        assert source.volume_ml == 0
        assert source.disposed_at is not None
    codes = sorted(c.container_code for c in outcome.created)
    assert codes == [f"{culture.culture_code}-P3-{i:02d}" for i in range(1, 7)]

    history = lineage.culture_history(db, culture.id)
    assert [h.action for h in history] == ["passage"]
    assert history[0].old_values == {"current_passage": 2}
    assert history[0].new_values["current_passage"] == 3
    assert [h.operation for h in a.history] == ["passage"]
    assert outcome.created[0].history[0].operation == "passage_created"


def test_passage_counter_moves_once_per_operation(db):
    culture = make_culture(db)
    seed = make_container(db, culture)
    first = _passage(db, culture, [seed], "1:2")
    assert culture.current_passage == 1

    _passage(db, culture, first.created, "1:1")
    assert culture.current_passage == 2
    assert len(lineage.list_containers(db, culture.id, status="active")) == 2


def test_passage_rejects_bad_sources(db):
    culture = make_culture(db)
    other = make_culture(db)
    own = make_container(db, culture)
    foreign = make_container(db, other)
    frozen = make_container(db, culture, status="frozen", index=2)
    held = make_container(db, culture, index=3, quality_hold="qp")
    actor = make_user(db)

    def attempt(ids, ratio="1:2"):
        return lineage.passage(
            db, culture.id, schemas.PassageRequest(source_container_ids=ids, split_ratio=ratio), actor
        )

    with pytest.raises(ValidationError):
        attempt([own.id, foreign.id])
    with pytest.raises(ValidationError):
        attempt([own.id, own.id])
    with pytest.raises(ReferenceNotFound):
        attempt([uuid.uuid4()])
    with pytest.raises(ConflictError):
        attempt([frozen.id])
    with pytest.raises(ConflictError) as exc:
        attempt([held.id])
    assert held.container_code in str(exc.value)
    with pytest.raises(ValidationError):
        attempt([own.id], "3:1")
    db.rollback()
    assert db.get(models.Culture, culture.id).current_passage == 0


def test_bank_creates_requested_vials(db):
    culture = make_culture(db, passage=4)
    sources = [make_container(db, culture, index=i) for i in (1, 2)]
    vial_type = models.ContainerType(id=uuid.uuid4(), name=f"cryovial-{uuid.uuid4().hex[:6]}", category="cryovial")
    db.add(vial_type)
    db.commit()
    actor = make_user(db)

    outcome = lineage.bank(
        db,
        culture.id,
        schemas.BankRequest(
            source_container_ids=[s.id for s in sources],
            vial_count=5,
            bank_type="mcb",
            cryopreservation_media="CryoStor CS10",
            freezing_rate="-1C/min",
            storage_temperature=-196,
            container_type_id=vial_type.id,
        ),
        actor,
    )
    db.commit()

    assert len(outcome.created) == 5
    for vial in outcome.created:
        assert vial.status == "frozen"
        assert vial.passage_number == 4
        assert vial.bank_type == "mcb"
        assert vial.cryopreservation_media == "CryoStor CS10"
        assert vial.container_type_id == vial_type.id
        assert vial.parent_container_id == sources[0].id
    assert sorted(v.container_code for v in outcome.created) == [
        f"{culture.culture_code}-MCB-{i:03d}" for i in range(1, 6)
    ]
    assert all(s.status == "frozen" and s.volume_ml == 0 for s in sources)
    assert culture.status == "frozen"


def test_master_bank_only_once(db):
    culture = make_culture(db)
    first = make_container(db, culture, index=1)
    actor = make_user(db)
    lineage.bank(
        db, culture.id, schemas.BankRequest(source_container_ids=[first.id], vial_count=2, bank_type="mcb"), actor
    )
    db.commit()

    second = make_container(db, culture, index=2)
    with pytest.raises(ConflictError):
        lineage.bank(
            db,
            culture.id,
            schemas.BankRequest(source_container_ids=[second.id], vial_count=2, bank_type="mcb"),
            actor,
        )
    db.rollback()

    outcome = lineage.bank(
        db, culture.id, schemas.BankRequest(source_container_ids=[second.id], vial_count=3, bank_type="wcb"), actor
    )
    db.commit()
    assert sorted(v.container_code for v in outcome.created) == [
        f"{culture.culture_code}-WCB-{i:03d}" for i in range(1, 4)
    ]


def test_thaw_revives_each_vial_once(db):
    culture = make_culture(db, passage=3)
    seed = make_container(db, culture)
    actor = make_user(db)
    banked = lineage.bank(
        db, culture.id, schemas.BankRequest(source_container_ids=[seed.id], vial_count=4, bank_type="wcb"), actor
    )
    db.commit()
    assert culture.status == "frozen"
    vials = banked.created[:2]

    outcome = lineage.thaw(
        db,
        culture.id,
        schemas.ThawRequest(
            source_container_ids=[v.id for v in vials],
            thaw_method="water bath 37C",
            thaw_duration_minutes=2,
            viability_post_thaw=88,
        ),
        actor,
    )
    db.commit()

    assert len(outcome.created) == 2
    assert all(c.status == "active" and c.passage_number == 3 for c in outcome.created)
    assert {c.parent_container_id for c in outcome.created} == {v.id for v in vials}
    for vial in vials:
        assert vial.status == "thawed"
        assert vial.thaw_method == "water bath 37C"
        assert vial.viability_post_thaw == 88
    assert culture.status == "active"

    with pytest.raises(ConflictError):
        lineage.thaw(db, culture.id, schemas.ThawRequest(source_container_ids=[vials[0].id]), actor)
    db.rollback()

    actions = [h.action for h in lineage.culture_history(db, culture.id)]
    assert actions == ["bank", "thaw"]


def test_disposed_culture_rejects_lineage(db):
    culture = make_culture(db, status="disposed")
    seed = make_container(db, culture)
    with pytest.raises(ConflictError):
        _passage(db, culture, [seed])
