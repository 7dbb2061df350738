"""
This script is used to train the semantic attention LanguageModel for caption generation.
"""
import sys, os

CURRENT_DIR = os.path.dirname(os.path.realpath(__file__))
sys.path.insert(0, CURRENT_DIR)

import torch
from lm_models import LanguageModel
from lm_criterions import build_criterion
from dataset_utils import get_dataloader
from lm_trainer import Trainer
from utils import read_config
from typing import Dict
import argparse, shutil


def train_language_model(config: Dict) -> Trainer:
    """
    Runs end-to-end training for a semantic attention language model using the LanguageModel, the
    ParallelCriterion built by build_criterion and the Trainer class with the configurations specified in the
    config file.

    :param config: A config dictionary containing parameters for various aspects of the training loop and
        model parameters for how to configure the model parameters.
    :returns: The Trainer after training has completed. Results are saved to disk.
    """
    if config.get("seed") is not None:
        torch.manual_seed(config["seed"])

    # 1). Init the language model and the criterion used to train it
    lm = LanguageModel(config["LanguageModel"], check_padding=config.get("check_padding", False))
    crit = build_criterion(**config.get("Criterion", {}))

    # 2). Construct the training dataset loader and validation dataset loader, captions are padded and
    # truncated to the seq_length of the model
    seq_length = lm.seq_length
    dataloader_train = get_dataloader(split="train", seq_length=seq_length,
                                      **config.get("DataLoaderTrain", {}))
    val_config = {k: v for k, v in config.get("DataLoaderVal", {}).items() if k != "shuffle"}
    dataloader_val = get_dataloader(split="val", seq_length=seq_length, shuffle=False, **val_config)
    ix_to_word = getattr(dataloader_train.dataset, "ix_to_word", None)

    # 3). Configure the training pipeline with the trainer object
    trainer = Trainer(lm, crit, dataloader_train, dataloader_val, ix_to_word=ix_to_word,
                      beam_size=config.get("Sampling", {}).get("beam_size", 1), **config.get("Trainer", {}))

    # 4). Train the model to completion
    trainer.train()
    return trainer


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Training Pipeline Module")
    parser.add_argument("--config", help="The name of the config file to use for training", default="debug")
    parser.add_argument("--dataset-dir", help="A directory of cached {split}.pt dataset files. A randomly "
                                              "generated toy dataset is used if not provided", default=None)
    args = parser.parse_args()
    debug = args.config.lower() == "debug"

    config = read_config(args.config, dataset_dir=args.dataset_dir)
    config.setdefault("Trainer", {})
    config["Trainer"].setdefault("results_folder", os.path.join(CURRENT_DIR, "results", args.config))

    if debug and config.get("clear_dir", False):
        results_dir = config["Trainer"]["results_folder"]
        if os.path.exists(results_dir):  # Check if the output results directory exists
            shutil.rmtree(results_dir)  # Remove entire results directory

    train_language_model(config)
