import json

import pytest
import torch

from emoscope.bundle import (
    ModelDescriptor,
    assemble_model,
    deserialize_shard,
    expected_layout,
    export_bundle,
    extract_state_dict,
    load_checkpoint,
    split_state_dict,
)
from emoscope.errors import BundleFormatError
from emoscope.models import EmotionCNN, build_placeholder_model


def test_export_writes_descriptor_and_fixed_shard_count(bundle_dir):
    names = sorted(path.name for path in bundle_dir.iterdir())

    assert names == sorted(expected_layout(4))
    descriptor = json.loads((bundle_dir / "model.json").read_text())
    assert descriptor["input_shape"] == [1, 48, 48, 1]
    assert descriptor["labels"][3] == "Happy"
    assert [entry["size"] for entry in descriptor["weights_manifest"]] == [
        (bundle_dir / entry["path"]).stat().st_size for entry in descriptor["weights_manifest"]
    ]


def test_split_state_dict_covers_every_tensor_once():
    state = build_placeholder_model().state_dict()

    shards = split_state_dict(state, 4)

    assert len(shards) == 4
    assert all(shards)
    assert [key for shard in shards for key in shard] == list(state)


def test_split_refuses_more_shards_than_tensors():
    with pytest.raises(ValueError):
        split_state_dict({"w": torch.zeros(1)}, 2)


def test_descriptor_round_trip_and_model_assembly(bundle_dir):
    descriptor = ModelDescriptor.from_json((bundle_dir / "model.json").read_bytes(), expected_shards=4)
    shards = [deserialize_shard((bundle_dir / entry.path).read_bytes()) for entry in descriptor.shards]

    model = assemble_model(descriptor, shards)
    reference = build_placeholder_model(seed=1).state_dict()

    for key, value in model.state_dict().items():
        assert torch.equal(value, reference[key])


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda d: d.update(format="tfjs-layers"), "Unsupported bundle format"),
        (lambda d: d.update(labels=list(reversed(d["labels"]))), "labels"),
        (lambda d: d.update(input_shape=[1, 64, 64, 1]), "input_shape"),
        (lambda d: d.update(output="softmax"), "output"),
        (lambda d: d["weights_manifest"].pop(), "expected 4"),
        (lambda d: d.pop("architecture"), "missing required fields"),
        (lambda d: d["weights_manifest"][0].update(path="../weights.bin"), "group1-shard1of4"),
    ],
)
def test_descriptor_validation(bundle_dir, mutate, message):
    data = json.loads((bundle_dir / "model.json").read_text())
    mutate(data)

    with pytest.raises(BundleFormatError, match=message):
        ModelDescriptor.from_json(json.dumps(data), expected_shards=4)


def test_descriptor_must_be_json():
    with pytest.raises(BundleFormatError, match="not valid JSON"):
        ModelDescriptor.from_json(b"\x89PNG", expected_shards=4)


def test_assembly_rejects_mismatched_weights(bundle_dir):
    descriptor = ModelDescriptor.from_json((bundle_dir / "model.json").read_bytes(), expected_shards=4)
    shards = [deserialize_shard((bundle_dir / entry.path).read_bytes()) for entry in descriptor.shards]
    first_key = descriptor.shards[0].keys[0]
    shards[0][first_key] = torch.zeros(3)

    with pytest.raises(BundleFormatError, match="do not fit"):
        assemble_model(descriptor, shards)


def test_training_checkpoints_load_into_emotion_cnn(tmp_path):
    trained = build_placeholder_model(seed=3)
    ckpt = tmp_path / "best.pt"
    torch.save({"epoch": 5, "state_dict": trained.state_dict(), "metric": 0.61}, ckpt)

    model = EmotionCNN()
    checkpoint = load_checkpoint(model, ckpt)

    assert checkpoint["epoch"] == 5
    for key, value in model.state_dict().items():
        assert torch.equal(value, trained.state_dict()[key])


def test_checkpoint_errors(tmp_path):
    with pytest.raises(BundleFormatError, match="not found"):
        load_checkpoint(EmotionCNN(), tmp_path / "missing.pt")
    with pytest.raises(BundleFormatError):
        extract_state_dict([1, 2, 3])


def test_export_accepts_custom_shard_count(tmp_path):
    export_bundle(build_placeholder_model(), tmp_path / "two", shard_count=2, output="probabilities")

    descriptor = ModelDescriptor.from_json((tmp_path / "two" / "model.json").read_text(), expected_shards=2)
    assert descriptor.output == "probabilities"
    assert [entry.path for entry in descriptor.shards] == ["group1-shard1of2.bin", "group1-shard2of2.bin"]
