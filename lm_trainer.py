"""
This module contains a Trainer class that is used to perform model training for the LanguageModel.
"""
import os
import numpy as np
import torch
from tqdm.auto import tqdm
from torch.optim import Adagrad, AdamW
import logging
import pandas as pd
from typing import Tuple, Dict
from torch.utils.data import DataLoader
from utils import get_device, decode_sequence, plot_and_save_loss
from dataset_utils import infinite_loader
from lm_models import LanguageModel
from lm_criterions import ParallelCriterion


class TqdmLoggingHandler(logging.Handler):
    def emit(self, record):
        msg = self.format(record)
        tqdm.write(msg)


##############################
### Language Model Trainer ###
##############################
# TODO: Section marker

class Trainer:
    def __init__(self, lm: LanguageModel, crit: ParallelCriterion, dataloader_train: DataLoader,
                 dataloader_val: DataLoader = None, ix_to_word: Dict[int, str] = None,
                 optimizer: str = "adagrad", lr: float = 0.1, weight_decay: float = 0.0,
                 adam_betas: Tuple[float] = (0.9, 0.98), grad_clip: float = None,
                 train_num_steps: int = 1000, sample_every: int = 100, save_every: int = 500,
                 beam_size: int = 1, results_folder: str = None, use_latest_checkpoint: bool = True,
                 device: str = None, *args, **kwargs):
        """
        A framework for training a LanguageModel with a ParallelCriterion. This class wrapper has methods for
        loading a model from a recent checkpoint, saving a model periodically during training, and running a
        training loop to train from scratch or to continue from the last checkpoint.

        Each training step runs the explicit forward / backward interface of the model: the criterion
        computes the loss and its gradients with respect to the model outputs, and LanguageModel.backward
        accumulates the parameter gradients.

        :param lm: The LanguageModel to be trained.
        :param crit: The criterion applied to the (log_probs, attention) outputs of the model.
        :param dataloader_train: A data loader object that will yield the required training batches.
        :param dataloader_val: A data loader object that will yield the validation batches used for
            periodic sampling. Samples are drawn from the training set if None.
        :param ix_to_word: A dictionary mapping word ids to strings, used to log decoded samples.
        :param optimizer: Either "adagrad" or "adamw".
        :param lr: The learning rate.
        :param weight_decay: The weight_decay provided to the optimizer for L2 regularization.
        :param adam_betas: Beta parameters for the adam optimizer.
        :param grad_clip: The amount of gradient clipping to use during training, None for no clipping.
        :param train_num_steps: The number of training steps to run in total.
        :param sample_every: An int denoting how often to sample and log outputs from the model.
        :param save_every: An int denoting how often to save the model weights and losses.
        :param beam_size: The beam size used for the periodic samples, 1 for greedy decoding.
        :param results_folder: A location to save the results of training.
        :param use_latest_checkpoint: If set to True, then the latest checkpoint detected in the results
            directory will be loaded in before training begins to pick up from where it was last left off.
        :param device: The device to train on, auto-detected if None.
        """
        super().__init__()

        # 1). Create directories to save results
        assert results_folder is not None, "You must specify results folder to save the outputs"
        self.results_folder = results_folder  # A directory where the checkpoints will be saved
        self.checkpoints_folder = os.path.join(self.results_folder, "checkpoints/")
        self.losses_folder = os.path.join(self.results_folder, "losses/")
        for directory in [self.results_folder, self.checkpoints_folder, self.losses_folder]:
            os.makedirs(directory, exist_ok=True)  # Create the directory if not already there

        # 2). Set up logging during training, one logger per results folder
        self.logger = logging.getLogger(f"{self.__class__.__name__}.{os.path.abspath(self.results_folder)}")
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:  # Prevent duplicate handlers
            file_handler = logging.FileHandler(os.path.join(self.results_folder, "train.log"),
                                               encoding="utf-8")
            file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
            self.logger.addHandler(file_handler)

            tqdm_handler = TqdmLoggingHandler()
            tqdm_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
            self.logger.addHandler(tqdm_handler)
        self.logger.propagate = False
        self.logger.info("Logger successfully initialized")

        # 3). Record input parameters
        self.lm = lm  # The language model to be trained
        self.crit = crit  # The criterion applied to the model outputs
        self.device = torch.device(device) if device is not None else get_device()
        self.grad_clip = grad_clip  # The amount of gradient clipping to use during training
        self.num_sample = 5  # Sets how many obs to randomly sample from the validation set for sampling
        self.save_every = save_every  # The frequency of saving model weights
        self.sample_every = sample_every  # How often to generate samples
        self.beam_size = beam_size  # The beam size used when sampling
        self.train_num_steps = train_num_steps  # The total number of training steps to run
        self.ix_to_word = ix_to_word

        # Save a pointer to the train and validation dataloaders
        self.dataloader_train = dataloader_train
        self.dataloader_val = dataloader_val if dataloader_val is not None else dataloader_train

        # 4). Configure the optimizer for training
        params = sum(p.numel() for p in lm.parameters())
        self.logger.info(f"Total model parameters: {params}")
        self.lm.to(self.device)  # Optimizer state is created on the same device as the parameters
        if optimizer.lower() == "adagrad":
            self.opt = Adagrad(self.lm.parameters(), lr=lr, weight_decay=weight_decay)
        elif optimizer.lower() == "adamw":
            self.opt = AdamW(self.lm.parameters(), lr=lr, weight_decay=weight_decay, betas=adam_betas)
        else:
            raise ValueError(f"optimizer must be one of 'adagrad' or 'adamw', got {optimizer}")

        # 5). Keep track of the training step and losses along the way
        self.step = 0  # Training step counter
        self.all_losses = []  # Aggregate loss values during training

        # 6). Load in the latest checkpoint weights to continue from where the model was last saved
        if use_latest_checkpoint:
            checkpoints = os.listdir(self.checkpoints_folder)
            if len(checkpoints) > 0:
                last_checkpoint = max([int(x.replace("model-", "").replace(".pt", "")) for x in checkpoints])
                self.load(last_checkpoint)  # Load in the most recent milestone to continue training

    def save(self, milestone: int) -> None:
        """
        Saves the weights of the model for the current milestone.

        :param milestone: An integer denoting the training timestep at which the model weights were saved.
        :returns: None. Writes the weights and losses to disk.
        """
        checkpoint_path = os.path.join(self.checkpoints_folder, f"model-{milestone}.pt")
        self.logger.info(f"Saving model to {checkpoint_path}.")
        data = {"step": self.step,
                "model": self.lm.state_dict(),
                "opt": self.opt.state_dict(),
                }
        torch.save(data, checkpoint_path)
        # Save down all the loss values produced by model training since the last caching
        pd.Series(self.all_losses).to_csv(os.path.join(self.losses_folder, f"losses-{milestone}.csv"))

    def load(self, milestone: int) -> None:
        """
        Loads in the cached weights from disk for a particular milestone.

        :param milestone: An integer denoting the training timestep at which the model weights were saved.
        :returns: None. Weights and other trainer state parameter values are loaded into memory.
        """
        checkpoint_path = os.path.join(self.checkpoints_folder, f"model-{milestone}.pt")
        self.logger.info(f"Loading model from {checkpoint_path}.")
        checkpoint_data = torch.load(checkpoint_path, map_location=self.device)

        # Re-instate the training step counter, model weights, and optimizer state from the checkpoint data
        # read in from disk
        self.step = checkpoint_data["step"]
        self.lm.load_state_dict(checkpoint_data["model"])
        self.opt.load_state_dict(checkpoint_data["opt"])
        # Losses are not loaded in, they are saved to disk periodically with the model weights and are not
        # needed to continue training. The losses obtained by training will be cached again at the next save

        # Move the optimizer state to the same device as the model to continue training
        for state in self.opt.state.values():
            for k, v in state.items():
                if torch.is_tensor(v):
                    state[k] = v.to(self.device)

    def train_step(self, batch: Dict) -> Tuple[float, float]:
        """
        Runs a single optimization step on a batch of data.

        :param batch: A dictionary with the keys "image_encoding", "seq" and "semantic_words".
        :returns: The loss value and the total gradient norm (before clipping).
        """
        imgs = batch["image_encoding"].to(self.device, non_blocking=True)  # (N, image_encoding_size)
        seq = batch["seq"].to(self.device, non_blocking=True)  # (T, N)
        semantic_words = batch["semantic_words"].to(self.device, non_blocking=True)  # (N, K)

        self.opt.zero_grad(set_to_none=True)  # Zero the grads of the opt before computing the loss
        inputs = (imgs, seq, semantic_words)
        outputs = self.lm(*inputs)  # (log_probs, attention)
        target = (seq, semantic_words)  # The tags mark which attention columns are padding
        loss = self.crit(outputs, target)
        grad_outputs = self.crit.backward(outputs, target)
        self.lm.backward(inputs, grad_outputs)  # Accumulates the parameter gradients

        params = [p for p in self.lm.parameters() if p.grad is not None]
        max_norm = self.grad_clip if self.grad_clip is not None else float("inf")
        grad_norm = torch.nn.utils.clip_grad_norm_(params, max_norm)
        self.opt.step()  # Update the model parameters by taking a gradient step
        return loss.item(), grad_norm.item()

    def generate_samples(self) -> None:
        """
        Samples word sequences for a few validation set examples and logs them next to the ground truth.
        """
        self.logger.info(f"Generating samples at step={self.step}, beam_size={self.beam_size}")
        batch = next(iter(self.dataloader_val))
        indices = torch.randperm(batch["image_encoding"].size(0))[:self.num_sample]
        imgs = batch["image_encoding"][indices].to(self.device)
        semantic_words = batch["semantic_words"][indices].to(self.device)
        seq, seq_logprobs = self.lm.sample(imgs, semantic_words, {"beam_size": self.beam_size})

        ix_to_word = self.ix_to_word or {i: str(i) for i in range(1, self.lm.vocab_size + 1)}
        pred_captions = decode_sequence(ix_to_word, seq)
        true_captions = decode_sequence(ix_to_word, batch["seq"][:, indices])
        for pred, true, lp in zip(pred_captions, true_captions, seq_logprobs.sum(dim=0).tolist()):
            self.logger.info(f"  pred: {pred} (logprob={lp:.3f}) | true: {true}")

    def train(self) -> None:
        """
        Runs the training of the model until completion for self.train_num_steps total training iterations.

        :returns: None. Caches the results to disk.
        """
        self.logger.info(f"Starting Training, device={self.device}")

        self.lm.to(self.device)  # Move the model to the correct device
        self.lm.train()  # Make sure to set the model to train mode for training

        # These data-loaders do not cache batches which makes them more memory efficient
        inf_dataloader_train = infinite_loader(self.dataloader_train)

        with tqdm(initial=self.step, total=self.train_num_steps) as pbar:

            while self.step < self.train_num_steps:  # Run until all training iterations are complete
                batch = next(inf_dataloader_train)
                loss, grad_norm = self.train_step(batch)

                pbar.set_postfix(loss=f"{loss:.4f}", ppl=f"{np.exp(loss):.2f}", grad=f"{grad_norm:.3f}")

                self.all_losses.append(loss)  # Aggregate all the loss values for each timestep
                self.step += 1

                # Periodically save the model weights to disk
                if self.step % self.save_every == 0 or self.step == self.train_num_steps:
                    self.save(self.step)
                    plot_and_save_loss(self.losses_folder)  # Generate a new plot of the training losses
                    self.all_losses = []  # Clear the list of losses after each save, store only the ones
                    # from the last save to the next save

                # Periodically log the loss and generate samples from the model
                if self.step % self.sample_every == 0 or self.step == self.train_num_steps:
                    self.logger.info(f"loss={loss:.4f}, grad_norm={grad_norm:.3f}, step={self.step}")
                    self.generate_samples()
                    self.lm.train()  # Switch the model back over to continue training

                pbar.update(1)
