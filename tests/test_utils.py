import os
import pytest
import numpy as np
import pandas as pd
import torch
from utils import sequence_lengths, validate_padding, decode_sequence, plot_and_save_loss, read_config
from utils import ShapeMismatchError, ConfigError


def test_sequence_lengths(padded_seq):
    lengths = sequence_lengths(padded_seq)
    assert lengths.dtype == torch.long
    expected = torch.full((10,), 7, dtype=torch.long)
    expected[0], expected[5] = 3, 4
    assert torch.equal(lengths, expected)


def test_sequence_lengths_of_empty_column():
    seq = torch.tensor([[0, 1], [0, 0]])
    assert sequence_lengths(seq).tolist() == [0, 1]


def test_validate_padding(padded_seq):
    validate_padding(padded_seq)  # Right padded, no error
    padded_seq[6, 0] = 3
    with pytest.raises(ValueError, match="Column 0"):
        validate_padding(padded_seq)


def test_decode_sequence():
    ix_to_word = {1: "a", 2: "dog", 3: "runs"}
    seq = torch.tensor([[1, 2], [2, 4], [3, 0], [4, 0]])  # 4 is END for a vocab of 3
    assert decode_sequence(ix_to_word, seq) == ["a dog runs", "dog"]
    assert decode_sequence(ix_to_word, seq.numpy()) == ["a dog runs", "dog"]


def test_error_types():
    assert issubclass(ShapeMismatchError, ValueError)
    assert issubclass(ConfigError, KeyError)


def test_plot_and_save_loss(tmp_path):
    pd.Series(np.linspace(2.0, 1.0, 5)).to_csv(os.path.join(tmp_path, "losses-5.csv"))
    pd.Series(np.linspace(1.0, 0.5, 5)).to_csv(os.path.join(tmp_path, "losses-10.csv"))
    plot_and_save_loss(str(tmp_path))
    assert os.path.exists(os.path.join(tmp_path, "training_loss.png"))


@pytest.mark.parametrize("config_name", ["debug", "default"])
def test_read_config(config_name):
    config = read_config(config_name)
    for section in ("LanguageModel", "Criterion", "DataLoaderTrain", "DataLoaderVal", "Trainer", "Sampling"):
        assert section in config
    assert config["DataLoaderTrain"]["dataset_dir"] is None
    assert "device" in config["DataLoaderVal"]
