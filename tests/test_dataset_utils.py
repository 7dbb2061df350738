import os
import torch
from itertools import islice
from dataset_utils import (collate_fn, CaptionDataset, make_toy_batch, make_toy_dataset, get_dataloader,
                           infinite_loader)
from utils import validate_padding


def test_collate_fn_pads_and_truncates():
    batch = [{"image_encoding": torch.randn(4), "caption": torch.tensor([1, 2, 3, 4, 5, 1]),
              "semantic_words": torch.tensor([3, 1])},
             {"image_encoding": torch.randn(4), "caption": torch.tensor([2]),
              "semantic_words": torch.tensor([2])}]
    out = collate_fn(batch, seq_length=4)
    assert out["image_encoding"].shape == (2, 4)
    assert out["seq"].tolist() == [[1, 2], [2, 0], [3, 0], [4, 0]]
    assert out["semantic_words"].tolist() == [[3, 1], [2, 0]]


def test_collate_fn_pads_up_to_seq_length():
    batch = [{"image_encoding": torch.randn(3), "caption": torch.tensor([1, 2]),
              "semantic_words": torch.tensor([1])}]
    out = collate_fn(batch, seq_length=5)
    assert out["seq"].shape == (5, 1)
    assert out["seq"][:, 0].tolist() == [1, 2, 0, 0, 0]


def test_make_toy_batch():
    batch = make_toy_batch(vocab_size=5, seq_length=7, batch_size=10, image_encoding_size=11,
                           num_semantic_words=10, padding={0: 3, 5: 4})
    assert batch["seq"].shape == (7, 10)
    assert batch["image_encoding"].shape == (10, 11)
    assert batch["semantic_words"].shape == (10, 10)
    assert torch.all(batch["seq"][3:, 0] == 0) and torch.all(batch["seq"][:3, 0] > 0)
    assert torch.all(batch["seq"][4:, 5] == 0)
    assert batch["seq"].max().item() <= 5
    validate_padding(batch["seq"])


def test_make_toy_batch_is_reproducible():
    a = make_toy_batch(generator=torch.Generator().manual_seed(3))
    b = make_toy_batch(generator=torch.Generator().manual_seed(3))
    assert torch.equal(a["seq"], b["seq"]) and torch.equal(a["image_encoding"], b["image_encoding"])


def test_caption_dataset_save_and_load(tmp_path):
    dataset = make_toy_dataset(num_examples=4, vocab_size=5, seq_length=6, image_encoding_size=3,
                               num_semantic_words=2)
    path = os.path.join(tmp_path, "train.pt")
    dataset.save(path)
    loaded = CaptionDataset.load(path)
    assert len(loaded) == 4
    assert torch.equal(loaded.image_encodings, dataset.image_encodings)
    assert loaded.captions == dataset.captions
    assert loaded.ix_to_word == dataset.ix_to_word

    item = loaded[1]
    assert item["caption"].dtype == torch.long
    assert item["semantic_words"].tolist() == dataset.semantic_words[1]


def test_get_dataloader_from_disk(tmp_path):
    make_toy_dataset(num_examples=5, image_encoding_size=3).save(os.path.join(tmp_path, "val.pt"))
    dataloader = get_dataloader(split="val", batch_size=2, seq_length=7, dataset_dir=str(tmp_path),
                                shuffle=False)
    batches = list(dataloader)
    assert len(batches) == 3
    assert batches[0]["seq"].shape == (7, 2)
    assert batches[-1]["image_encoding"].shape == (1, 3)


def test_get_toy_dataloader_and_infinite_loader():
    dataloader = get_dataloader(split="train", batch_size=4, seq_length=7,
                                toy={"num_examples": 6, "image_encoding_size": 5, "num_semantic_words": 3})
    batches = list(islice(infinite_loader(dataloader), 5))  # More batches than one epoch holds
    assert len(batches) == 5
    for batch in batches:
        assert batch["seq"].shape[0] == 7
        assert batch["semantic_words"].shape[1] == 3
        validate_padding(batch["seq"])
