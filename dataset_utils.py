"""
This module contains the in-memory caption dataset and the data loaders used to feed the LanguageModel.

Image encodings are produced upstream by an external feature extractor, captions are already tokenized into
word ids 1..vocab_size and each example comes with K semantic words. A cached split is a .pt file holding a
dictionary with the keys "image_encodings", "captions" and "semantic_words".
"""
import os

import torch
import random
from torch.nn.utils.rnn import pad_sequence
from torch.utils.data import Dataset, DataLoader
from typing import Dict, List


####################
### Data Loaders ###
####################

def infinite_loader(dataloader: DataLoader):
    """
    Infinitely yields batches of data from the input dataloader (dl) without caching batches.
    """
    while True:
        for batch in dataloader:
            yield batch


def collate_fn(batch: List[Dict], seq_length: int) -> Dict:
    """
    This function is used aggregate multiple entries from the dataset into a batch. Captions are truncated to
    seq_length, right padded with 0 and laid out as a (seq_length, N) tensor with one column per example.
    Semantic words are right padded with 0 to the largest K in the batch.

    :param batch: A batch as a list of dictionaries.
    :param seq_length: The max length of a caption, the number of rows of the output seq tensor.
    :returns: A dictionary with the keys "image_encoding" (N, D), "seq" (seq_length, N) and
        "semantic_words" (N, K).
    """
    image_encoding = torch.stack([b["image_encoding"] for b in batch])
    captions = [b["caption"][:seq_length] for b in batch]
    seq = pad_sequence(captions, batch_first=False, padding_value=0)  # (T_max, N)
    if seq.shape[0] < seq_length:  # Pad up to the full seq_length rows
        seq = torch.cat([seq, seq.new_zeros(seq_length - seq.shape[0], seq.shape[1])], dim=0)
    semantic_words = pad_sequence([b["semantic_words"] for b in batch], batch_first=True, padding_value=0)
    return {"image_encoding": image_encoding, "seq": seq, "semantic_words": semantic_words}


class CaptionDataset(Dataset):
    """
    Dataset object for pre-computed image encodings with tokenized captions and semantic words.
    """

    def __init__(self, image_encodings: torch.Tensor, captions: List[List[List[int]]],
                 semantic_words: List[List[int]], ix_to_word: Dict[int, str] = None):
        """
        :param image_encodings: A float tensor of size (M, image_encoding_size), one row per image.
        :param captions: A list of M lists, the captions (lists of word ids) associated with each image.
        :param semantic_words: A list of M lists of semantic word ids, one list per image.
        :param ix_to_word: An optional dictionary mapping word ids 1..vocab_size to strings.
        """
        assert len(image_encodings) == len(captions) == len(semantic_words), "dataset lengths must match"
        self.image_encodings = image_encodings
        self.captions = captions
        self.semantic_words = semantic_words
        self.ix_to_word = ix_to_word

    @classmethod
    def load(cls, path: str) -> "CaptionDataset":
        """
        Reads in a cached dataset split saved with torch.save.
        """
        data = torch.load(path, map_location="cpu", weights_only=False)
        return cls(data["image_encodings"], data["captions"], data["semantic_words"], data.get("ix_to_word"))

    def save(self, path: str) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)  # Make this directory if not already there
        torch.save({"image_encodings": self.image_encodings, "captions": self.captions,
                    "semantic_words": self.semantic_words, "ix_to_word": self.ix_to_word}, path)

    def __len__(self):
        """
        Returns the total number of images in the dataset.
        """
        return len(self.captions)

    def __getitem__(self, idx: int) -> Dict:
        """
        Returns a dictionary containing keys "image_encoding", "caption" and "semantic_words" for a
        particular index in the dataset.
        """
        caption = random.choice(self.captions[idx])  # Sample a random caption associated with this image
        return {"image_encoding": self.image_encodings[idx],
                "caption": torch.tensor(caption, dtype=torch.long),
                "semantic_words": torch.tensor(self.semantic_words[idx], dtype=torch.long)}


def make_toy_batch(vocab_size: int = 5, seq_length: int = 7, batch_size: int = 10,
                   image_encoding_size: int = 11, num_semantic_words: int = 10,
                   padding: Dict[int, int] = None, generator: torch.Generator = None) -> Dict:
    """
    Generates a random batch in the layout produced by collate_fn.

    :param vocab_size: Word ids are drawn uniformly from 1..vocab_size.
    :param seq_length: The number of rows of the seq tensor.
    :param batch_size: The number of examples.
    :param image_encoding_size: The size of the random image encodings.
    :param num_semantic_words: The number of semantic words K per example.
    :param padding: An optional dictionary {column: row} (both 0-indexed), the column is padded with 0 from
        that row onwards.
    :param generator: An optional torch.Generator for reproducible batches.
    :returns: A dictionary with the keys "image_encoding", "seq" and "semantic_words".
    """
    seq = torch.randint(1, vocab_size + 1, (seq_length, batch_size), generator=generator)
    for column, row in (padding or {}).items():
        seq[row:, column] = 0
    image_encoding = torch.randn(batch_size, image_encoding_size, generator=generator)
    semantic_words = torch.randint(1, vocab_size + 1, (batch_size, num_semantic_words), generator=generator)
    return {"image_encoding": image_encoding, "seq": seq, "semantic_words": semantic_words}


def make_toy_dataset(num_examples: int = 64, vocab_size: int = 5, seq_length: int = 7,
                     image_encoding_size: int = 11, num_semantic_words: int = 10, seed: int = 0
                     ) -> CaptionDataset:
    """
    Generates a random CaptionDataset with captions of random length 1..seq_length, used when no cached
    dataset is available e.g. for debugging runs.
    """
    g = torch.Generator().manual_seed(seed)
    image_encodings = torch.randn(num_examples, image_encoding_size, generator=g)
    captions, semantic_words = [], []
    for _ in range(num_examples):
        length = int(torch.randint(1, seq_length + 1, (1,), generator=g))
        captions.append([torch.randint(1, vocab_size + 1, (length,), generator=g).tolist()])
        semantic_words.append(torch.randint(1, vocab_size + 1, (num_semantic_words,), generator=g).tolist())
    ix_to_word = {i: f"w{i}" for i in range(1, vocab_size + 1)}
    return CaptionDataset(image_encodings, captions, semantic_words, ix_to_word)


def get_dataloader(split: str = "train", batch_size: int = 16, seq_length: int = 16,
                   dataset_dir: str = None, shuffle: bool = True, toy: Dict = None, device: str = "cpu",
                   *args, **kwargs) -> DataLoader:
    """
    This method returns a DataLoader object by loading in the cached dataset split from disk, or a randomly
    generated toy dataset if no dataset_dir is given.

    :param split: The data split e.g. "train" or "val".
    :param batch_size: The batch size for the data loader.
    :param seq_length: The max caption length, captions are truncated and padded to this many rows.
    :param dataset_dir: A directory containing {split}.pt files, or None to use a toy dataset.
    :param shuffle: Whether to shuffle the examples every epoch.
    :param toy: Keyword arguments for make_toy_dataset when no dataset_dir is given.
    :param device: A string denoting the device.
    :returns: A DataLoader object yielding collated batches.
    """
    if dataset_dir is not None:
        dataset = CaptionDataset.load(os.path.join(dataset_dir, f"{split}.pt"))
    else:
        toy = dict(toy or {})
        toy.setdefault("seq_length", seq_length)
        toy.setdefault("seed", 0 if split == "train" else 1)
        dataset = make_toy_dataset(**toy)
    return DataLoader(dataset, batch_size=batch_size, shuffle=shuffle, num_workers=0, pin_memory=False,
                      collate_fn=lambda b: collate_fn(b, seq_length=seq_length))
