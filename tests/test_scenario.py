import pytest

from tests.fixtures_seed import FakeClassifier, square


SERVICE_AREAS = [
    {"id": 101, "name": "Majorstuen", "geofence": square(10.71, 59.9)},
    {"id": 102, "name": "Skillebekk", "geofence": square(10.72, 59.9)},
    {"id": 201, "name": "Nordnes", "geofence": square(5.31, 60.39)},
    {"id": 202, "name": "Sandviken", "geofence": square(5.33, 60.41)},
    {"id": 203, "name": "Møhlenpris", "geofence": square(5.32, 60.38)},
    {"id": 301, "name": "Bakklandet", "geofence": square(10.40, 63.43)},
]


@pytest.mark.asyncio
async def test_import_review_commit(pipeline, provider, classifier):
    provider.service_areas = SERVICE_AREAS
    classifier.mapping.update({
        "Majorstuen": ("Oslo", "Frogner"),
        "Skillebekk": ("Oslo", "Frogner"),
        "Nordnes": ("Bergen", "Bergenhus"),
        "Sandviken": ("Bergen", "Bergenhus"),
        "Møhlenpris": ("Bergen", "Årstad"),
        "Bakklandet": ("Trondheim", "Midtbyen"),
    })

    status = await pipeline.get_pipeline_status()
    assert status["next_action"]["type"] == "import"

    imported = await pipeline.start_ai_import()
    assert [c["name"] for c in imported.staged] == ["Bergen", "Oslo", "Trondheim"]
    status = await pipeline.get_pipeline_status()
    assert status["counts"]["staging_pending"] == 3
    assert status["next_action"]["type"] == "review"

    by_name = {c["name"]: c for c in imported.staged}
    approved = [by_name["Bergen"]["id"], by_name["Oslo"]["id"]]
    await pipeline.approve_many(approved, actor="reviewer-1")
    status = await pipeline.get_pipeline_status()
    assert status["next_action"] == {
        "type": "commit",
        "message": "2 approved cities are ready to commit to production.",
        "urgency": "high",
    }
    before = status["counts"]

    result = await pipeline.commit()

    assert result.ok
    assert sorted(c["name"] for c in result.committed) == ["Bergen", "Oslo"]
    after = (await pipeline.get_pipeline_status())["counts"]
    assert after["snapshot"] - before["snapshot"] == 5
    assert after["production_areas"] - before["production_areas"] == 5
    assert after["staging_pending"] == 1
    assert after["staging_committed"] == 2

    for city_id in approved:
        assert (await pipeline.get_staging_city(city_id))["status"] == "committed"
    assert (await pipeline.get_staging_city(by_name["Trondheim"]["id"]))["status"] == "pending"

    # guards are free again once every operation returned
    status = await pipeline.get_pipeline_status()
    assert not any(status["busy"].values())
    assert status["next_action"]["type"] == "review"
