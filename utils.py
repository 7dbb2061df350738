"""
This module contains general utility functions used throughout the repo.
"""
import sys, os

CURRENT_DIR = os.path.dirname(os.path.realpath(__file__))
sys.path.insert(0, CURRENT_DIR)

import torch, yaml
import numpy as np
import pandas as pd
from typing import Dict, List, Union
import matplotlib.pyplot as plt


class ShapeMismatchError(ValueError):
    """
    Raised when the tensors passed to the language model or its criteria do not agree in shape.
    """


class ConfigError(KeyError):
    """
    Raised when a required model configuration option is missing.
    """


def get_device():
    """
    Auto-detects what hardware is available and returns the appropriate device.

    :returns: A torch device denoting what device is available.
    """
    if torch.backends.mps.is_available() and torch.backends.mps.is_built():
        device = torch.device("mps")
    elif torch.cuda.is_available():
        device = torch.device("cuda")
    else:
        device = torch.device("cpu")
    return device


def sequence_lengths(seq: torch.Tensor) -> torch.Tensor:
    """
    Computes the number of real (non-padding) word tokens in each column of a right-padded sequence tensor.

    :param seq: A tensor of word token ids of size (T, N) where 0 denotes padding.
    :returns: A long tensor of size (N, ) with the index of the first padding token of each column, or T if
        the column has no padding.
    """
    T = seq.shape[0]
    is_pad = (seq == 0)  # (T, N)
    # Position of the first padding token, columns without any padding get T
    first_pad = torch.where(is_pad.any(dim=0), is_pad.float().argmax(dim=0), torch.full_like(seq[0], T))
    return first_pad.long()  # (N, )


def validate_padding(seq: torch.Tensor) -> None:
    """
    Debug-mode check that every column of a sequence tensor is right padded, i.e. that once a 0 appears in a
    column, every later entry of that column is also 0.

    :param seq: A tensor of word token ids of size (T, N).
    :returns: None. Raises a ValueError naming the first malformed column.
    """
    assert seq.dim() == 2, f"seq must be 2-dimensional (T, N), got {tuple(seq.shape)}"
    T = seq.shape[0]
    lengths = sequence_lengths(seq)  # (N, )
    steps = torch.arange(T, device=seq.device).unsqueeze(1)  # (T, 1)
    after_pad = steps >= lengths.unsqueeze(0)  # (T, N) True at and after the first padding token
    bad_columns = ((seq != 0) & after_pad).any(dim=0).nonzero().flatten()
    if len(bad_columns) > 0:
        col = bad_columns[0].item()
        raise ValueError(f"Column {col} of seq has a word token after padding: {seq[:, col].tolist()}")


def decode_sequence(ix_to_word: Dict[int, str], seq: Union[torch.Tensor, np.ndarray]) -> List[str]:
    """
    Converts a (T, N) tensor or np.ndarray of word token ids to a list of N output string sentences. Decoding
    of each column stops at the first padding (0) or END (vocab_size + 1) token.

    :param ix_to_word: A dictionary mapping word token ids 1..vocab_size to strings.
    :param seq: A tensor of word token ids of size (T, N).
    :returns: A list of N strings, one per column of seq.
    """
    seq = seq.tolist() if hasattr(seq, "tolist") else seq  # Also accept an np.ndarray
    T = len(seq)
    N = len(seq[0]) if T > 0 else 0
    output = []
    for j in range(N):
        words = []
        for t in range(T):
            ix = seq[t][j]
            if ix not in ix_to_word:  # Stop at padding or the END token, neither are in the vocab
                break
            words.append(ix_to_word[ix])
        output.append(" ".join(words))
    return output


def plot_and_save_loss(loss_dir: str) -> None:
    """
    Combines all the data cached to a directory of loss value outputs and combines them together to create a
    loss plot which is then saved down in the same directory as well.

    :param loss_dir: A directory containing losses-{milestone}.csv files.
    :returns: None, generates a plot that is then saved to disk.
    """
    filenames = [x for x in os.listdir(loss_dir) if x.startswith("losses") and x.endswith(".csv")]
    if len(filenames) > 0:  # Otherwise do nothing
        all_losses = []
        milestones = [int(x.replace("losses-", "").replace(".csv", "")) for x in filenames]
        for m in sorted(milestones):
            df = pd.read_csv(os.path.join(loss_dir, f"losses-{m}.csv"), index_col=0)
            all_losses.extend(df.iloc[:, 0].tolist())
        all_losses = pd.Series(all_losses)  # Convert to a pd.Series for ease of use
        all_losses.index += 1  # Set the index to begin at 1
        # Create a plot and save it to the same directory
        fig, ax = plt.subplots(1, 1, figsize=(10, 3))
        ax.plot(all_losses, zorder=3)
        ax.set_ylabel("Loss")
        ax.set_xlabel("Training Step")
        ax.set_title("Training Loss")
        ax.grid(color="lightgray", zorder=-3)
        fig.savefig(os.path.join(loss_dir, "training_loss.png"), dpi=300, bbox_inches='tight')
        plt.close(fig)


def read_config(config_name: str, dataset_dir: str = None) -> dict:
    """
    Helper function that reads in a yaml config file specified and returns the associated data as a dict.

    :param config_name: A str denoting the name of the config e.g. "debug" or "default".
    :param dataset_dir: The location of a cached dataset to add to the config file. If None, the data loaders
        fall back to randomly generated toy batches.
    :return: A dictionary of data read in from the yaml config file.
    """
    file_path = os.path.join(CURRENT_DIR, f"config/{config_name}.yml")
    with open(file_path, encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    cfg["dataset_dir"] = dataset_dir
    device = get_device()
    for section in ("DataLoaderTrain", "DataLoaderVal"):
        cfg.setdefault(section, {})
        cfg[section]["dataset_dir"] = dataset_dir
        cfg[section]["device"] = device
    return cfg
