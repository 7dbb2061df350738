import math
import pytest
import torch
from torch.nn import functional as F
from lm_criterions import (LanguageModelCriterion, AttentionWeightsCriterion, ParallelCriterion,
                           build_criterion, supervision_targets)
from utils import ShapeMismatchError


def random_log_probs(T1: int, N: int, V1: int, dtype=torch.float64) -> torch.Tensor:
    return F.log_softmax(torch.randn(T1, N, V1, dtype=dtype), dim=-1)


def random_attention(T1: int, N: int, K: int, dtype=torch.float64) -> torch.Tensor:
    return F.softmax(torch.randn(T1, N, K, dtype=dtype), dim=-1)


def autograd_gradient(crit, x: torch.Tensor, *args) -> torch.Tensor:
    x = x.detach().requires_grad_(True)
    crit(x, *args).backward()
    return x.grad


def test_supervision_targets():
    seq = torch.tensor([[2, 1], [5, 0], [0, 0]])  # (T=3, N=2), columns of length 2 and 1
    log_probs = random_log_probs(4, 2, 6)
    mask, columns = supervision_targets(log_probs, seq)
    assert mask.tolist() == [[1, 1], [1, 1], [1, 0], [0, 0]]
    # Word w is column w - 1 and END is the last column
    assert columns[:, 0].tolist() == [1, 4, 5, 0]
    assert columns[:, 1].tolist() == [0, 5, 0, 0]


def test_sequence_loss_value():
    seq = torch.tensor([[3], [0]])  # One word then padding
    log_probs = random_log_probs(3, 1, 6)
    loss = LanguageModelCriterion()(log_probs, seq)
    expected = -(log_probs[0, 0, 2] + log_probs[1, 0, 5]) / 2
    torch.testing.assert_close(loss, expected)


def test_sequence_loss_of_uniform_distribution(dtype):
    log_probs = torch.full((8, 10, 6), -math.log(6), dtype=dtype)
    seq = torch.randint(1, 6, (7, 10))
    loss = LanguageModelCriterion()(log_probs, seq)
    assert abs(loss.item() - math.log(6)) < 1e-5


def test_sequence_loss_gradient_matches_autograd(padded_seq):
    crit = LanguageModelCriterion()
    log_probs = random_log_probs(8, 10, 6)
    torch.testing.assert_close(crit.backward(log_probs, padded_seq),
                               autograd_gradient(crit, log_probs, padded_seq))


def test_sequence_loss_shape_mismatch():
    with pytest.raises(ShapeMismatchError):
        LanguageModelCriterion()(random_log_probs(8, 10, 6), torch.randint(1, 6, (6, 10)))


def test_attention_penalty_is_zero_for_uniform_attention():
    attention = torch.full((8, 4, 5), 0.2, dtype=torch.float64)
    crit = AttentionWeightsCriterion()
    assert crit(attention).item() == pytest.approx(0.0, abs=1e-12)
    assert crit.backward(attention).abs().max().item() == pytest.approx(0.0, abs=1e-12)


def test_attention_penalty_value():
    # One example, two tags, two steps both attending fully to the first tag: coverage (2, 0), target (1, 1)
    attention = torch.tensor([[[1.0, 0.0]], [[1.0, 0.0]]], dtype=torch.float64)
    assert AttentionWeightsCriterion()(attention).item() == pytest.approx(1.0)


def test_attention_penalty_gradient_matches_autograd(padded_seq):
    crit = AttentionWeightsCriterion()
    attention = random_attention(8, 10, 4)
    for seq in (None, padded_seq):
        torch.testing.assert_close(crit.backward(attention, seq), autograd_gradient(crit, attention, seq))


def test_attention_penalty_ignores_padded_steps(padded_seq):
    crit = AttentionWeightsCriterion()
    grad = crit.backward(random_attention(8, 10, 4), padded_seq)
    assert torch.all(grad[4:, 0] == 0)
    assert torch.all(grad[5:, 5] == 0)


def test_attention_penalty_without_semantic_words():
    attention = torch.zeros(8, 3, 0)
    crit = AttentionWeightsCriterion()
    assert crit(attention).item() == 0.0
    assert crit.backward(attention).shape == (8, 3, 0)


def padded_semantic_words() -> torch.Tensor:
    semantic_words = torch.randint(1, 6, (10, 4))
    semantic_words[0, 2:] = 0
    semantic_words[3, 1:] = 0
    semantic_words[7] = 0  # No real tags at all
    return semantic_words


def test_attention_penalty_is_zero_with_padded_tags():
    # 8 steps spread evenly over 2 real tags, the tags are padded to K=4
    attention = torch.tensor([0.5, 0.5, 0.0, 0.0], dtype=torch.float64).repeat(8, 1, 1)
    semantic_words = torch.tensor([[3, 1, 0, 0]])
    crit = AttentionWeightsCriterion()
    assert crit(attention, (None, semantic_words)).item() == pytest.approx(0.0, abs=1e-12)
    assert torch.all(crit.backward(attention, (None, semantic_words)) == 0)
    # Without the tags every column counts as real, so the padding columns look under attended
    assert crit(attention).item() == pytest.approx(4.0)


def test_attention_penalty_with_padded_tags_matches_autograd(padded_seq):
    crit = AttentionWeightsCriterion()
    attention = random_attention(8, 10, 4)
    for target in ((None, padded_semantic_words()), (padded_seq, padded_semantic_words())):
        torch.testing.assert_close(crit.backward(attention, target),
                                   autograd_gradient(crit, attention, target))


def test_attention_penalty_ignores_padding_tags(padded_seq):
    semantic_words = padded_semantic_words()
    crit = AttentionWeightsCriterion()
    grad = crit.backward(random_attention(8, 10, 4), (padded_seq, semantic_words))
    pad = (semantic_words == 0).unsqueeze(0).expand_as(grad)
    assert torch.all(grad[pad] == 0)
    assert grad[:, 1].abs().sum() > 0


def test_attention_penalty_semantic_words_shape_mismatch():
    with pytest.raises(ShapeMismatchError):
        AttentionWeightsCriterion()(random_attention(8, 10, 4), (None, torch.randint(1, 6, (10, 3))))


def test_sequence_loss_ignores_semantic_words_in_target(padded_seq):
    crit = LanguageModelCriterion()
    log_probs = random_log_probs(8, 10, 6)
    target = (padded_seq, padded_semantic_words())
    torch.testing.assert_close(crit(log_probs, target), crit(log_probs, padded_seq))
    torch.testing.assert_close(crit.backward(log_probs, target), crit.backward(log_probs, padded_seq))



def test_parallel_criterion_combines_weighted_losses(padded_seq):
    log_probs, attention = random_log_probs(8, 10, 6), random_attention(8, 10, 4)
    crit = ParallelCriterion(repeat_target=True).add(LanguageModelCriterion(), 1.0)
    crit.add(AttentionWeightsCriterion(), 0.5)

    loss = crit((log_probs, attention), padded_seq)
    expected = (LanguageModelCriterion()(log_probs, padded_seq)
                + 0.5 * AttentionWeightsCriterion()(attention, padded_seq))
    torch.testing.assert_close(loss, expected)

    grad_log_probs, grad_attention = crit.backward((log_probs, attention), padded_seq)
    torch.testing.assert_close(grad_log_probs, LanguageModelCriterion().backward(log_probs, padded_seq))
    torch.testing.assert_close(grad_attention,
                               0.5 * AttentionWeightsCriterion().backward(attention, padded_seq))


def test_parallel_criterion_per_criterion_targets():
    log_probs = random_log_probs(3, 2, 4)
    seq_a, seq_b = torch.tensor([[1, 2], [3, 0]]), torch.tensor([[2, 2], [0, 0]])
    crit = ParallelCriterion(repeat_target=False)
    crit.add(LanguageModelCriterion(), 2.0).add(LanguageModelCriterion(), 1.0)
    # Both criteria look at the first input here, so pass it twice
    loss = crit((log_probs, log_probs), (seq_a, seq_b))
    expected = 2.0 * LanguageModelCriterion()(log_probs, seq_a) + LanguageModelCriterion()(log_probs, seq_b)
    torch.testing.assert_close(loss, expected)


def test_parallel_criterion_inputs_without_criterion_get_zero_gradient(padded_seq):
    log_probs, attention = random_log_probs(8, 10, 6), random_attention(8, 10, 4)
    crit = ParallelCriterion().add(LanguageModelCriterion())
    grads = crit.backward((log_probs, attention), padded_seq)
    assert len(grads) == 2
    assert torch.equal(grads[1], torch.zeros_like(attention))


def test_build_criterion_gradient_matches_autograd(padded_seq):
    crit = build_criterion(attention_weight=0.3, sequence_weight=2.0)
    log_probs = random_log_probs(8, 10, 6).requires_grad_(True)
    attention = random_attention(8, 10, 3).requires_grad_(True)
    crit((log_probs, attention), padded_seq).backward()
    grad_log_probs, grad_attention = crit.backward((log_probs.detach(), attention.detach()), padded_seq)
    torch.testing.assert_close(grad_log_probs, log_probs.grad)
    torch.testing.assert_close(grad_attention, attention.grad)


def test_build_criterion_with_semantic_words_matches_autograd(padded_seq):
    crit = build_criterion(attention_weight=0.3)
    target = (padded_seq, padded_semantic_words())
    log_probs = random_log_probs(8, 10, 6).requires_grad_(True)
    attention = random_attention(8, 10, 4).requires_grad_(True)
    crit((log_probs, attention), target).backward()
    grad_log_probs, grad_attention = crit.backward((log_probs.detach(), attention.detach()), target)
    torch.testing.assert_close(grad_log_probs, log_probs.grad)
    torch.testing.assert_close(grad_attention, attention.grad)
