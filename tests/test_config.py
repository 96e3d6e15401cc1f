import pytest

from brepmesh.config import (
    DEFAULT_EPSILON,
    FaceElement,
    IngestPolicy,
    MeshingPolicy,
    VolumeElement,
    load_policy,
    save_policy,
)


def test_policy_dict_round_trip():
    policy = MeshingPolicy(
        target_element_size=0.25,
        position_tolerance=1e-5,
        size_overrides={3: 0.1, "xmin": 0.2},
        strict=True,
        deterministic=True,
        workers=2,
        face_element=FaceElement.QUAD,
        volume_element=VolumeElement.HEXA,
    )
    restored = MeshingPolicy.from_dict(policy.to_dict())
    assert restored == policy
    assert restored.size_overrides == ((3, 0.1), ("xmin", 0.2))


def test_policy_is_hashable_and_immutable():
    overrides = {"xmin": 0.2}
    policy = MeshingPolicy(size_overrides=overrides)
    overrides["xmax"] = 0.1
    assert policy.size_overrides == (("xmin", 0.2),)
    assert hash(policy) == hash(MeshingPolicy(size_overrides=[("xmin", 0.2)]))
    assert len({policy, MeshingPolicy(size_overrides=(("xmin", 0.2),))}) == 1


def test_policy_file_round_trip(tmp_path):
    policy = MeshingPolicy(target_element_size=0.3, workers=1)
    path = str(tmp_path / "policy.json")
    save_policy(policy, path)
    assert load_policy(path) == policy


@pytest.mark.parametrize("kwargs", [
    {"target_element_size": 0.0},
    {"position_tolerance": -1.0},
    {"workers": 0},
    {"size_overrides": {"edge": -0.5}},
])
def test_policy_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        MeshingPolicy(**kwargs)


def test_tolerance_resolution():
    assert MeshingPolicy(position_tolerance=1e-4).resolve_tolerance(100.0) == 1e-4
    assert MeshingPolicy().resolve_tolerance(10.0) == pytest.approx(1e-8)
    assert MeshingPolicy().resolve_tolerance(0.0) == DEFAULT_EPSILON
    assert IngestPolicy(tolerance=0.5).resolve_tolerance(1.0) == 0.5


def test_ingest_policy_from_dict_defaults():
    policy = IngestPolicy.from_dict({})
    assert policy.best_effort is True
    assert policy.tolerance is None
