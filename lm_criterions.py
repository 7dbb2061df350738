"""
This module contains the criteria used to train the LanguageModel: a masked sequence negative log-likelihood,
an attention-weight coverage penalty, and a combinator that adds them together with weights.

Every criterion exposes forward (the scalar loss, also differentiable with autograd) and backward (the
analytic gradient with respect to its input) so that it can drive LanguageModel.backward directly.
"""
import torch
import torch.nn as nn
import logging
from typing import List, Optional, Sequence, Tuple, Union
from utils import ShapeMismatchError, sequence_lengths

logger = logging.getLogger(__name__)

PAD_TAG = 0


def split_target(target) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    """
    Splits a criterion target into (seq, semantic_words). A target is either the seq tensor alone (or None)
    or a (seq, semantic_words) tuple, semantic_words is None in the first case.
    """
    if isinstance(target, (tuple, list)):
        seq, semantic_words = target
        return seq, semantic_words
    return target, None


def supervision_targets(log_probs: torch.Tensor, seq: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Works out which output rows of each column are supervised and by which log-probability column.

    A column with L real words supervises rows 0..L-1 with the words seq[0..L-1] and row L with the END token,
    later rows are not supervised. For padding that begins at the 1-indexed row p of seq this leaves the
    1-indexed output rows p + 2 onwards unsupervised.

    :param log_probs: Log-probabilities of size (T + 1, N, V + 1).
    :param seq: A long tensor of right padded word ids of size (T, N).
    :returns:
        - mask: A float tensor of size (T + 1, N), 1 for supervised rows and 0 otherwise.
        - columns: A long tensor of size (T + 1, N) with the supervised log-probability column (0 where the
            row is not supervised).
    """
    T1, N, V1 = log_probs.shape
    if seq.dim() != 2 or seq.shape[0] != T1 - 1 or seq.shape[1] != N:
        raise ShapeMismatchError(f"seq must be ({T1 - 1}, {N}) to match log_probs {tuple(log_probs.shape)}, "
                                 f"got {tuple(seq.shape)}")
    seq = seq.to(log_probs.device)
    lengths = sequence_lengths(seq).unsqueeze(0)  # (1, N)
    rows = torch.arange(T1, device=log_probs.device).unsqueeze(1)  # (T + 1, 1)
    padded = torch.cat([seq, seq.new_zeros(1, N)], dim=0)  # (T + 1, N)

    supervised = rows <= lengths  # (T + 1, N)
    # Word id w is predicted by column w - 1, END (vocab_size + 1) by the last column
    columns = torch.where(rows < lengths, padded - 1, torch.full_like(padded, V1 - 1))
    columns = columns.masked_fill(~supervised, 0)
    return supervised.to(log_probs.dtype), columns


class LanguageModelCriterion(nn.Module):
    """
    Masked negative log-likelihood of the target words (and the END token) averaged over the number of
    supervised positions.
    """

    def forward(self, log_probs: torch.Tensor, target) -> torch.Tensor:
        """
        Computes the average negative log-likelihood per supervised word.

        :param log_probs: Log-probabilities output by the LanguageModel, of size (T + 1, N, V + 1).
        :param target: A long tensor of right padded target word ids of size (T, N), or a
            (seq, semantic_words) tuple whose semantic_words are ignored.
        :returns: A scalar loss tensor.
        """
        seq, _ = split_target(target)
        mask, columns = supervision_targets(log_probs, seq)
        picked = log_probs.gather(2, columns.unsqueeze(2)).squeeze(2)  # (T + 1, N)
        return -(picked * mask).sum() / mask.sum()

    def backward(self, log_probs: torch.Tensor, target) -> torch.Tensor:
        """
        Computes the gradient of the loss with respect to log_probs: -1 / count at the supervised column of
        each supervised row, where count is the number of supervised rows, and exactly 0 everywhere else.

        :param log_probs: Log-probabilities output by the LanguageModel, of size (T + 1, N, V + 1).
        :param target: A seq tensor of size (T, N) or a (seq, semantic_words) tuple, as in forward.
        :returns: A tensor of the same size as log_probs.
        """
        seq, _ = split_target(target)
        mask, columns = supervision_targets(log_probs, seq)
        grad = torch.zeros_like(log_probs)
        grad.scatter_(2, columns.unsqueeze(2), (-mask / mask.sum()).unsqueeze(2))
        return grad


class AttentionWeightsCriterion(nn.Module):
    """
    A coverage penalty on the attention weights (doubly stochastic regularization). Over the supervised steps
    of an example, each of its real semantic words should receive the same total amount of attention, i.e. a
    coverage of (supervised steps) / (number of real tags). The penalty is the mean squared deviation from
    that coverage over the real tags. Padding tags (id 0) never receive attention and are left out of both
    the deviation and the gradient.

    The target is either the sequence alone, or a (seq, semantic_words) tuple which identifies the padding
    tags. Without semantic_words all K tags are counted as real.
    """

    def _coverage(self, attention: torch.Tensor, seq: Optional[torch.Tensor],
                  semantic_words: Optional[torch.Tensor]):
        T1, N, K = attention.shape
        if seq is None:
            mask = attention.new_ones(T1, N)
        else:
            if seq.dim() != 2 or seq.shape[0] != T1 - 1 or seq.shape[1] != N:
                raise ShapeMismatchError(f"seq must be ({T1 - 1}, {N}) to match attention "
                                         f"{tuple(attention.shape)}, got {tuple(seq.shape)}")
            lengths = sequence_lengths(seq.to(attention.device)).unsqueeze(0)  # (1, N)
            rows = torch.arange(T1, device=attention.device).unsqueeze(1)  # (T + 1, 1)
            mask = (rows <= lengths).to(attention.dtype)  # (T + 1, N)

        if semantic_words is None:
            tags = attention.new_ones(N, K)
        else:
            if tuple(semantic_words.shape) != (N, K):
                raise ShapeMismatchError(f"semantic_words must be ({N}, {K}) to match attention "
                                         f"{tuple(attention.shape)}, got {tuple(semantic_words.shape)}")
            tags = (semantic_words.to(attention.device) != PAD_TAG).to(attention.dtype)  # (N, K)

        num_tags = tags.sum(dim=1, keepdim=True).clamp(min=1)  # (N, 1)
        coverage = (attention * mask.unsqueeze(2)).sum(dim=0)  # (N, K)
        target = mask.sum(dim=0).unsqueeze(1) / num_tags  # (N, 1)
        return mask, tags, (coverage - target) * tags

    def forward(self, attention: torch.Tensor, target=None) -> torch.Tensor:
        """
        :param attention: The attention trace output by the LanguageModel, of size (T + 1, N, K).
        :param target: An optional long tensor of right padded target word ids of size (T, N), used to
            restrict the penalty to the supervised steps, or a (seq, semantic_words) tuple where
            semantic_words of size (N, K) marks the padding tags. All steps are used if seq is None.
        :returns: A scalar loss tensor, 0 if there are no real semantic words.
        """
        if attention.shape[2] == 0:
            return attention.new_zeros(())
        _, tags, deviation = self._coverage(attention, *split_target(target))
        return (deviation ** 2).sum() / tags.sum().clamp(min=1)

    def backward(self, attention: torch.Tensor, target=None) -> torch.Tensor:
        """
        :param attention: The attention trace output by the LanguageModel, of size (T + 1, N, K).
        :param target: An optional seq tensor of size (T, N) or a (seq, semantic_words) tuple, as in forward.
        :returns: The gradient of the penalty with respect to attention, of size (T + 1, N, K), 0 on the
            unsupervised steps and on the padding tags.
        """
        if attention.shape[2] == 0:
            return torch.zeros_like(attention)
        mask, tags, deviation = self._coverage(attention, *split_target(target))
        grad = 2.0 * deviation / tags.sum().clamp(min=1)  # (N, K)
        return mask.unsqueeze(2) * grad.unsqueeze(0)


class ParallelCriterion(nn.Module):
    """
    Combines an ordered list of criteria, the i-th criterion is applied to the i-th input. The total loss is
    the weighted sum of the criteria losses and the gradient of each input is the weighted sum of the
    gradients of the criteria applied to it.

    Example Usage:
        crit = ParallelCriterion(repeat_target=True)
        crit.add(LanguageModelCriterion(), 1.0)
        crit.add(AttentionWeightsCriterion(), 1.0)
        loss = crit((log_probs, attention), (seq, semantic_words))
        grad_log_probs, grad_attention = crit.backward((log_probs, attention), (seq, semantic_words))
    """

    def __init__(self, repeat_target: bool = True):
        """
        :param repeat_target: If True, the same target is given to every criterion, otherwise target[i] is
            given to the i-th criterion.
        """
        super().__init__()
        self.repeat_target = repeat_target
        self.criterions = nn.ModuleList()
        self.weights: List[float] = []

    def add(self, criterion: nn.Module, weight: float = 1.0) -> "ParallelCriterion":
        self.criterions.append(criterion)
        self.weights.append(float(weight))
        return self

    def _target(self, target, i: int):
        return target if self.repeat_target else target[i]

    def forward(self, inputs: Sequence[torch.Tensor], target) -> torch.Tensor:
        """
        :param inputs: A sequence of tensors, at least as many as there are criteria.
        :param target: The target shared by all criteria, or a sequence of per-criterion targets.
        :returns: The weighted sum of the criteria losses.
        """
        assert len(inputs) >= len(self.criterions), \
            f"expected {len(self.criterions)} inputs, got {len(inputs)}"
        loss = 0.0
        for i, (crit, weight) in enumerate(zip(self.criterions, self.weights)):
            loss = loss + weight * crit(inputs[i], self._target(target, i))
        return loss

    def backward(self, inputs: Sequence[torch.Tensor], target) -> Tuple[torch.Tensor, ...]:
        """
        :param inputs: A sequence of tensors, at least as many as there are criteria.
        :param target: The target shared by all criteria, or a sequence of per-criterion targets.
        :returns: A tuple with one gradient per input, inputs without a criterion get an all-zeros gradient.
        """
        grads: List[Union[torch.Tensor, None]] = [None] * len(inputs)
        for i, (crit, weight) in enumerate(zip(self.criterions, self.weights)):
            grad = weight * crit.backward(inputs[i], self._target(target, i))
            grads[i] = grad if grads[i] is None else grads[i] + grad
        return tuple(torch.zeros_like(x) if g is None else g for g, x in zip(grads, inputs))


def build_criterion(attention_weight: float = 1.0, sequence_weight: float = 1.0) -> ParallelCriterion:
    """
    Builds the criterion used to train the LanguageModel: the sequence loss on the log-probabilities plus the
    attention coverage penalty on the attention trace.

    :param attention_weight: The weight of the attention coverage penalty, 0 turns it off.
    :param sequence_weight: The weight of the masked sequence loss.
    :returns: A ParallelCriterion expecting (log_probs, attention) inputs and a (seq, semantic_words) target,
        or the target sequence alone.
    """
    crit = ParallelCriterion(repeat_target=True)
    crit.add(LanguageModelCriterion(), sequence_weight)
    crit.add(AttentionWeightsCriterion(), attention_weight)
    logger.debug(f"Built criterion with weights {crit.weights}")
    return crit
