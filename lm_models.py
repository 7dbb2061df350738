"""
This module defines the recurrent language model with attention over semantic words and the layers used to
create it.
"""

import torch
import torch.nn as nn
from torch.nn import functional as F
from torch.nn.parameter import Parameter
import math
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple, Union
from utils import ShapeMismatchError, ConfigError, validate_padding

logger = logging.getLogger(__name__)

PAD_TOKEN = 0  # The "no token" word id, only ever found after a sequence has ended

# A per-layer list of (hidden, cell) pairs, each of size (N, rnn_size)
HiddenState = List[Tuple[torch.Tensor, torch.Tensor]]


########################
### Helper Functions ###
########################
# TODO: Section marker


def lstm_step_forward(x: torch.Tensor, prev_h: torch.Tensor, prev_c: torch.Tensor, Wx: torch.Tensor,
                      Wh: torch.Tensor, b: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Forward pass for a single timestep of an LSTM.

    The input data has dimension D, the hidden state has dimension H, and we use a minibatch size of N.

    :param x: Input data, of shape (N, D).
    :param prev_h: Previous hidden state, of shape (N, H).
    :param prev_c: Previous cell state, of shape (N, H).
    :param Wx: Input-to-hidden weights, of shape (D, 4H).
    :param Wh: Hidden-to-hidden weights, of shape (H, 4H).
    :param b: Biases, of shape (4H,).
    :returns:
        - next_h: Next hidden state, of shape (N, H).
        - next_c: Next cell state, of shape (N, H).
    """
    a = x.matmul(Wx) + prev_h.matmul(Wh) + b  # Compute the activation vector (N, 4H)

    H = prev_h.shape[1]
    a_i, a_f, a_o, a_g = torch.split(a, H, dim=1)  # Each: (N, H)

    input_gate = torch.sigmoid(a_i)  # (N, H)
    forget_gate = torch.sigmoid(a_f)  # (N, H)
    output_gate = torch.sigmoid(a_o)  # (N, H)
    block_input = torch.tanh(a_g)  # (N, H)

    next_c = forget_gate * prev_c + input_gate * block_input  # (N, H)
    next_h = output_gate * torch.tanh(next_c)  # (N, H)
    return next_h, next_c


def select_hidden(state: HiddenState, index: torch.Tensor) -> HiddenState:
    """
    Re-orders (or repeats) the rows of every (hidden, cell) pair in a hidden state bundle.

    :param state: A per-layer list of (hidden, cell) tensors, each of size (N, H).
    :param index: A long tensor of row indices of size (M, ).
    :returns: A new hidden state bundle with tensors of size (M, H).
    """
    return [(h.index_select(0, index), c.index_select(0, index)) for h, c in state]


######################
### Sequence Codec ###
######################
# TODO: Section marker

class WordCodec(nn.Module):
    """
    Maps word token ids to dense word encodings and the image encoding to the recurrent input width.

    Word ids 1..vocab_size are real words, 0 is the padding token which maps to a fixed all-zero placeholder
    encoding, and vocab_size + 1 is the END token. END is never a real input, when it is fed back during
    sampling it is treated the same as padding. On the output side, column j of a log-probability
    distribution corresponds to word id j + 1, which puts END in the last column.
    """

    def __init__(self, vocab_size: int, word_encoding_size: int, image_encoding_size: int):
        """
        :param vocab_size: The number of real words in the vocabulary.
        :param word_encoding_size: The size of the word embedding vectors.
        :param image_encoding_size: The size of the externally supplied image encoding vectors. If it differs
            from word_encoding_size, a learned linear projection maps image encodings to word_encoding_size.
        """
        super().__init__()
        self.vocab_size = vocab_size
        self.end_token = vocab_size + 1
        self.word_embed = nn.Embedding(vocab_size + 1, word_encoding_size, padding_idx=PAD_TOKEN)
        if image_encoding_size == word_encoding_size:
            self.image_proj = nn.Identity()
        else:
            self.image_proj = nn.Linear(image_encoding_size, word_encoding_size)

    def encode_words(self, word_ids: torch.Tensor) -> torch.Tensor:
        """
        Converts a tensor of word ids of any shape (...) to a tensor of word encodings of size (..., E).
        """
        word_ids = word_ids.masked_fill(word_ids == self.end_token, PAD_TOKEN)
        return self.word_embed(word_ids)

    def encode_image(self, image_encoding: torch.Tensor) -> torch.Tensor:
        """
        Converts a batch of image encodings (N, image_encoding_size) to recurrent inputs (N, E).
        """
        return self.image_proj(image_encoding)

    def column_to_token(self, columns: torch.Tensor) -> torch.Tensor:
        "Maps log-probability columns to word ids."
        return columns + 1


########################
### Attention Module ###
########################
# TODO: Section marker

class SemanticAttention(nn.Module):
    """
    Additive attention over the embeddings of a set of semantic words (tags).

    At each decoding step the previous recurrent hidden state is compared against every semantic word
    embedding, f_att(a_k, h) = v^T tanh(W_a a_k + W_h h), the scores are normalized with a softmax over the K
    semantic words and the attention context is the weighted combination of the semantic word embeddings.
    """

    def __init__(self, word_encoding_size: int, rnn_size: int, attn_size: int = None):
        """
        :param word_encoding_size: The size of the semantic word embeddings, also the context vector size.
        :param rnn_size: The size of the recurrent hidden state the attention is conditioned on.
        :param attn_size: The size of the hidden layer used to score each semantic word, defaults to rnn_size.
        """
        super().__init__()
        attn_size = rnn_size if attn_size is None else attn_size
        self.W_a = nn.Linear(word_encoding_size, attn_size, bias=False)
        self.W_h = nn.Linear(rnn_size, attn_size)
        self.v = nn.Linear(attn_size, 1, bias=False)

    def project(self, sem_emb: torch.Tensor) -> torch.Tensor:
        """
        Projects the semantic word embeddings (N, K, E) into the attention space (N, K, A). This does not
        depend on the hidden state so it is computed once per decode and re-used at every step.
        """
        return self.W_a(sem_emb)

    def forward(self, prev_h: torch.Tensor, sem_emb: torch.Tensor, sem_proj: torch.Tensor,
                pad_mask: torch.Tensor = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Computes the attention context and the attention weights for a single decoding step.

        :param prev_h: The recurrent hidden state of the top layer from the previous step, of size (N, H).
        :param sem_emb: The semantic word embeddings, of size (N, K, E).
        :param sem_proj: The output of self.project(sem_emb), of size (N, K, A).
        :param pad_mask: An optional bool tensor of size (N, K), True where the semantic word is padding and
            should not be attended to.
        :returns:
            - context: The weighted combination of the semantic word embeddings, of size (N, E).
            - weights: The attention weight distribution over the K semantic words, of size (N, K).
        """
        scores = self.v(torch.tanh(sem_proj + self.W_h(prev_h).unsqueeze(1))).squeeze(-1)  # (N, K)
        if pad_mask is not None:
            # A large negative value rather than -inf so that rows with only padding stay finite (uniform)
            scores = scores.masked_fill(pad_mask, -1e9)
        weights = F.softmax(scores, dim=-1)  # (N, K)
        context = torch.bmm(weights.unsqueeze(1), sem_emb).squeeze(1)  # (N, 1, K) @ (N, K, E) -> (N, E)
        return context, weights


######################
### Recurrent Core ###
######################
# TODO: Section marker

class LSTMCore(nn.Module):
    """
    A multi-layer, uni-directional LSTM that is advanced one step at a time.
    """

    def __init__(self, input_size: int, rnn_size: int, num_layers: int = 1, dropout: float = 0.0):
        """
        Model parameters to initialize per layer l:
            - Wx[l]: Weights for input-to-hidden connections, of shape (D_l, 4H)
            - Wh[l]: Weights for hidden-to-hidden connections, of shape (H, 4H)
            - b[l]: Biases, of shape (4H,)

        :param input_size: The size of the inputs to the first layer, D_0.
        :param rnn_size: The size of the hidden and cell states, H.
        :param num_layers: The number of stacked LSTM layers.
        :param dropout: The dropout probability applied to the inputs of layers 2 and above.
        """
        super().__init__()
        self.rnn_size = rnn_size
        self.num_layers = num_layers
        self.Wx, self.Wh, self.b = nn.ParameterList(), nn.ParameterList(), nn.ParameterList()
        for layer in range(num_layers):
            layer_input_size = input_size if layer == 0 else rnn_size
            self.Wx.append(Parameter(torch.randn(layer_input_size, 4 * rnn_size)
                                     .div(math.sqrt(layer_input_size))))
            self.Wh.append(Parameter(torch.randn(rnn_size, 4 * rnn_size).div(math.sqrt(rnn_size))))
            self.b.append(Parameter(torch.zeros(4 * rnn_size)))
        self.dropout = nn.Dropout(dropout)

    def init_hidden(self, N: int, like: torch.Tensor) -> HiddenState:
        """
        Returns an all-zeros hidden state bundle for N rows with the same device and dtype as like.
        """
        return [(like.new_zeros(N, self.rnn_size), like.new_zeros(N, self.rnn_size))
                for _ in range(self.num_layers)]

    def forward(self, x: torch.Tensor, prev_state: HiddenState) -> HiddenState:
        """
        Advances every layer of the LSTM by one time step.

        :param x: Input data for one time step, of shape (N, D_0).
        :param prev_state: The hidden state bundle from the previous time step.
        :returns: The next hidden state bundle, the hidden state of the top layer is next_state[-1][0].
        """
        next_state = []
        layer_input = x
        for layer in range(self.num_layers):
            if layer > 0:
                layer_input = self.dropout(layer_input)
            prev_h, prev_c = prev_state[layer]
            next_h, next_c = lstm_step_forward(layer_input, prev_h, prev_c, self.Wx[layer], self.Wh[layer],
                                               self.b[layer])
            next_state.append((next_h, next_c))
            layer_input = next_h
        return next_state


class OutputLayer(nn.Module):
    """
    Projects the top-layer recurrent hidden state to log-probabilities over vocab_size + 1 outcomes.
    """

    def __init__(self, rnn_size: int, vocab_size: int, dropout: float = 0.0):
        super().__init__()
        self.dropout = nn.Dropout(dropout)
        self.proj = nn.Linear(rnn_size, vocab_size + 1)  # +1 for the END token

    def forward(self, h: torch.Tensor) -> torch.Tensor:
        return F.log_softmax(self.proj(self.dropout(h)), dim=-1)  # (N, vocab_size + 1)


###################
### Beam Search ###
###################
# TODO: Section marker

@dataclass
class BeamState:
    """
    The state of a batch of beams between two rounds of beam search. All per-beam tensors are of size
    (N, beam_size) and the hidden state rows are ordered example-major i.e. row n * beam_size + j is beam j of
    example n.

    The token, parent and log-prob histories hold one (N, beam_size) tensor per completed round. parents[t]
    is the back-pointer from each beam at round t to the beam it extended at round t - 1.
    """
    logprob_sum: torch.Tensor  # Cumulative log-probability of each hypothesis
    finished: torch.Tensor  # True once a hypothesis has emitted the END token
    hidden: HiddenState
    tokens: List[torch.Tensor] = field(default_factory=list)
    parents: List[torch.Tensor] = field(default_factory=list)
    logprobs: List[torch.Tensor] = field(default_factory=list)

    def backtrack(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Follows the back-pointers from the highest scoring hypothesis of each example.

        :returns:
            - seq: The word ids of the best hypothesis, of size (T, N).
            - seq_logprobs: The per-step log-probabilities along the best hypothesis, of size (T, N).
        """
        T = len(self.tokens)
        beam = self.logprob_sum.argmax(dim=1, keepdim=True)  # (N, 1), lowest beam index wins ties
        seq, seq_logprobs = [None] * T, [None] * T
        for t in reversed(range(T)):
            seq[t] = self.tokens[t].gather(1, beam).squeeze(1)
            seq_logprobs[t] = self.logprobs[t].gather(1, beam).squeeze(1)
            beam = self.parents[t].gather(1, beam)
        return torch.stack(seq), torch.stack(seq_logprobs)


######################
### Language Model ###
######################
# TODO: Section marker

REQUIRED_OPTIONS = ("vocab_size", "word_encoding_size", "image_encoding_size", "rnn_size", "seq_length")


class LanguageModel(nn.Module):
    """
    A recurrent language model that generates word sequences conditioned on an image encoding and a set of
    semantic words.

    The model is unrolled for seq_length + 1 steps. At step 0 the image encoding is fed as the recurrent input
    and at each later step t the encoding of the previous word is fed, concatenated with an attention context
    computed over the semantic word embeddings. Each step outputs a distribution over the vocab_size words
    plus the END token.

    Example Usage:
        lm = LanguageModel({"vocab_size": 5, "word_encoding_size": 11, "image_encoding_size": 11,
                            "rnn_size": 8, "seq_length": 7})
        log_probs, attention = lm(imgs, seq, semantic_words)
        grad_log_probs, grad_attention = crit.backward((log_probs, attention), (seq, semantic_words))
        grad_imgs, grad_seq, _ = lm.backward((imgs, seq, semantic_words), (grad_log_probs, grad_attention))
    """

    def __init__(self, opt: Dict = None, check_padding: bool = False, **kwargs):
        """
        Initializes a LanguageModel from a dictionary of options (keyword arguments are merged on top).

        :param opt: A dictionary with keys vocab_size, word_encoding_size, image_encoding_size, rnn_size and
            seq_length (required) and num_layers (default 1), dropout (default 0.0) and batch_size (optional,
            informational only).
        :param check_padding: If True, every target sequence passed to forward is checked to be right padded.
        """
        super().__init__()
        opt = dict(opt or {}, **kwargs)
        for key in REQUIRED_OPTIONS:
            if key not in opt:
                raise ConfigError(f"LanguageModel option '{key}' is required")

        # 1). Record input parameters
        self.vocab_size = int(opt["vocab_size"])  # The number of real words, ids 1..vocab_size
        self.word_encoding_size = int(opt["word_encoding_size"])  # The size of the word embeddings
        self.image_encoding_size = int(opt["image_encoding_size"])  # The size of the image encodings
        self.rnn_size = int(opt["rnn_size"])  # The size of the LSTM hidden states
        self.num_layers = int(opt.get("num_layers", 1))  # The number of stacked LSTM layers
        self.dropout = float(opt.get("dropout", 0.0))  # Dropout probability used during training
        self.seq_length = int(opt["seq_length"])  # The max length of a word sequence
        self.batch_size = opt.get("batch_size")  # Informational only, any batch size is accepted
        self.check_padding = check_padding
        self.end_token = self.vocab_size + 1  # The reserved END token id

        for key in ("vocab_size", "word_encoding_size", "image_encoding_size", "rnn_size", "num_layers",
                    "seq_length"):
            if getattr(self, key) <= 0:
                raise ValueError(f"LanguageModel option '{key}' must be > 0, got {getattr(self, key)}")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError(f"LanguageModel option 'dropout' must be in [0, 1), got {self.dropout}")

        # 2). Set up the model layers
        self.codec = WordCodec(self.vocab_size, self.word_encoding_size, self.image_encoding_size)
        self.attention = SemanticAttention(self.word_encoding_size, self.rnn_size)
        # The recurrent input at each step is [word encoding, attention context]
        self.core = LSTMCore(2 * self.word_encoding_size, self.rnn_size, self.num_layers, self.dropout)
        self.output_layer = OutputLayer(self.rnn_size, self.vocab_size, self.dropout)
        self.encoding_dropout = nn.Dropout(self.dropout)  # Applied to the word and image encodings

        # A dummy param to tracking the device and dtype of this model during later calls
        self.register_buffer('device_param', torch.empty(0))

        # 3). Initialize the weights of the network randomly
        self.apply(self._init_weights)

        # 4). Set up a local cache of the most recent forward pass, consumed by backward
        self._cache = None

    def _init_weights(self, module):
        """
        Initialize the weights of the network.
        """
        if isinstance(module, nn.Linear):
            module.weight.data.normal_(mean=0.0, std=0.02)
            if module.bias is not None:
                module.bias.data.zero_()
        elif isinstance(module, nn.Embedding):
            module.weight.data.normal_(mean=0.0, std=1.0 / math.sqrt(module.num_embeddings))
            if module.padding_idx is not None:
                module.weight.data[module.padding_idx].zero_()  # Padding maps to the zero placeholder

    def _check_inputs(self, image_encoding: torch.Tensor, seq: Optional[torch.Tensor],
                      semantic_words: Optional[torch.Tensor]) -> None:
        """
        Validates the shapes of the model inputs before any computation, raises a ShapeMismatchError if the
        batch sizes disagree or if a tensor does not match the model configuration.
        """
        if image_encoding.dim() != 2 or image_encoding.shape[1] != self.image_encoding_size:
            raise ShapeMismatchError(f"image_encoding must be (N, {self.image_encoding_size}), "
                                     f"got {tuple(image_encoding.shape)}")
        N = image_encoding.shape[0]
        if seq is not None:
            if seq.dim() != 2 or seq.shape[0] != self.seq_length or seq.shape[1] != N:
                raise ShapeMismatchError(f"seq must be ({self.seq_length}, {N}) to match image_encoding, "
                                         f"got {tuple(seq.shape)}")
            if self.check_padding:
                validate_padding(seq)
        if semantic_words is not None:
            if semantic_words.dim() != 2 or semantic_words.shape[0] != N:
                raise ShapeMismatchError(f"semantic_words must be ({N}, K) to match image_encoding, "
                                         f"got {tuple(semantic_words.shape)}")

    def _prepare_semantics(self, semantic_words: Optional[torch.Tensor], repeat: int = 1):
        """
        Embeds the semantic words once per decode.

        :param semantic_words: A long tensor of semantic word ids of size (N, K) or None.
        :param repeat: The number of consecutive copies of each row to make, used to give every beam its own
            copy.
        :returns: None if there are no semantic words, otherwise a tuple of the semantic word embeddings
            (N * repeat, K, E), their attention projections (N * repeat, K, A) and the padding mask
            (N * repeat, K).
        """
        if semantic_words is None or semantic_words.shape[1] == 0:
            return None
        semantic_words = semantic_words.to(self.device_param.device)
        if repeat > 1:
            semantic_words = semantic_words.repeat_interleave(repeat, dim=0)
        sem_emb = self.codec.encode_words(semantic_words)  # (N, K, E)
        return sem_emb, self.attention.project(sem_emb), semantic_words == PAD_TOKEN

    def _step(self, xt: torch.Tensor, state: HiddenState, semantics, attend: bool = True
              ) -> Tuple[torch.Tensor, torch.Tensor, HiddenState]:
        """
        Runs a single decoding step: attention over the semantic words, an LSTM core step and the output
        layer.

        :param xt: The recurrent input for this step (a word or image encoding), of size (N, E).
        :param state: The hidden state bundle from the previous step.
        :param semantics: The output of self._prepare_semantics.
        :param attend: If False, the attention context is all zeros and the returned attention weights are
            uniform over the non-padding semantic words. Used for the image step.
        :returns:
            - logprobs: The log-probabilities over vocab_size + 1 outcomes, of size (N, V + 1).
            - weights: The attention weights over the semantic words, of size (N, K).
            - state: The next hidden state bundle.
        """
        xt = self.encoding_dropout(xt)
        N = xt.shape[0]
        if semantics is None:
            context = xt.new_zeros(N, self.word_encoding_size)
            weights = xt.new_zeros(N, 0)
        elif not attend:
            sem_emb, _, pad_mask = semantics
            context = xt.new_zeros(N, self.word_encoding_size)
            valid = (~pad_mask).to(xt.dtype)  # (N, K)
            valid = torch.where(valid.sum(dim=1, keepdim=True) > 0, valid, torch.ones_like(valid))
            weights = valid / valid.sum(dim=1, keepdim=True)
        else:
            context, weights = self.attention(state[-1][0], *semantics)

        state = self.core(torch.cat([xt, context], dim=1), state)
        logprobs = self.output_layer(state[-1][0])
        return logprobs, weights, state

    def _pick(self, logprobs: torch.Tensor, ended: torch.Tensor, temperature: float = 0.0
              ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Chooses the next word of every row from its log-probability distribution.

        :param logprobs: Log-probabilities of size (N, V + 1).
        :param ended: A bool tensor of size (N, ), True for rows that already emitted END.
        :param temperature: 0 for the argmax (the lowest index wins ties), otherwise the temperature used to
            sample from the distribution.
        :returns: The chosen word ids (N, ), with 0 for ended rows, their log-probabilities (N, ), with 0 for
            ended rows, and the updated ended flags (N, ).
        """
        if temperature == 0.0:
            columns = logprobs.argmax(dim=1)  # (N, )
        else:
            probs = F.softmax(logprobs / temperature, dim=-1)  # (N, V + 1)
            columns = torch.multinomial(probs, num_samples=1).squeeze(1)  # (N, )
        picked = logprobs.gather(1, columns.unsqueeze(1)).squeeze(1)  # (N, )
        tokens = self.codec.column_to_token(columns).masked_fill(ended, PAD_TOKEN)
        picked = picked.masked_fill(ended, 0.0)
        return tokens, picked, ended | (tokens == self.end_token)

    def forward(self, image_encoding: torch.Tensor, seq: torch.Tensor = None,
                semantic_words: torch.Tensor = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Unrolls the model over seq_length + 1 steps with teacher forcing and returns the log-probabilities and
        attention weights of every step.

        Step 0 is conditioned only on the image encoding, step t > 0 is fed the word seq[t - 1] (the zero
        placeholder encoding for padding, every step is always executed). If seq is None, the unroll is
        free-running and each step is fed the argmax word of the step before.

        :param image_encoding: A batch of image encodings of size (N, image_encoding_size).
        :param seq: A long tensor of right padded target word ids of size (seq_length, N) or None.
        :param semantic_words: A long tensor of semantic word ids of size (N, K) or None.
        :returns:
            - log_probs: A tensor of size (seq_length + 1, N, vocab_size + 1).
            - attention: A tensor of size (seq_length + 1, N, K), each (t, n) slice sums to 1. K is 0 when
                semantic_words is None.
        """
        self._check_inputs(image_encoding, seq, semantic_words)
        N = image_encoding.shape[0]
        track_gradients = torch.is_grad_enabled()

        imgs = image_encoding.to(device=self.device_param.device, dtype=self.device_param.dtype)
        if track_gradients and not imgs.requires_grad:
            imgs = imgs.detach().requires_grad_(True)  # A leaf so that backward can report its gradient
        if seq is not None:
            seq = seq.to(self.device_param.device)

        semantics = self._prepare_semantics(semantic_words)
        state = self.core.init_hidden(N, imgs)
        ended = torch.zeros(N, dtype=torch.bool, device=imgs.device)
        tokens = None

        all_logprobs, all_weights = [], []
        for t in range(self.seq_length + 1):
            if t == 0:
                xt = self.codec.encode_image(imgs)
            elif seq is not None:
                xt = self.codec.encode_words(seq[t - 1])  # Teacher forcing
            else:
                xt = self.codec.encode_words(tokens)
            logprobs, weights, state = self._step(xt, state, semantics, attend=(t > 0))
            if seq is None:
                tokens, _, ended = self._pick(logprobs.detach(), ended)
            all_logprobs.append(logprobs)
            all_weights.append(weights)

        log_probs = torch.stack(all_logprobs)  # (T + 1, N, V + 1)
        attention = torch.stack(all_weights)  # (T + 1, N, K)

        if track_gradients:
            self._cache = {"imgs": imgs, "image_shape": tuple(image_encoding.shape),
                           "outputs": (log_probs, attention)}
        else:
            self._cache = None
        return log_probs, attention

    def backward(self, inputs: Tuple, grad_outputs: Union[torch.Tensor, Tuple[torch.Tensor, ...]]
                 ) -> Tuple[torch.Tensor, torch.Tensor, None]:
        """
        Back-propagates gradients of the two outputs of the most recent forward call through the full unroll
        in reverse step order. Parameter gradients are accumulated into the .grad of each parameter, so the
        caller should zero them beforehand.

        :param inputs: The (image_encoding, seq, semantic_words) inputs given to the most recent forward.
        :param grad_outputs: A (grad_log_probs, grad_attention) tuple shaped like the forward outputs, or just
            grad_log_probs. Either entry may be None.
        :returns:
            - grad_image_encoding: The gradient with respect to the image encoding, of size
                (N, image_encoding_size).
            - grad_seq: An empty tensor, word ids are not differentiable.
            - grad_semantic_words: None, word ids are not differentiable.
        """
        if self._cache is None:
            raise RuntimeError("backward requires a preceding forward call with gradient tracking enabled")
        image_encoding = inputs[0] if isinstance(inputs, (tuple, list)) else inputs
        if tuple(image_encoding.shape) != self._cache["image_shape"]:
            raise ShapeMismatchError(f"backward image_encoding {tuple(image_encoding.shape)} does not match "
                                     f"the forward input {self._cache['image_shape']}")
        if torch.is_tensor(grad_outputs):
            grad_outputs = (grad_outputs,)

        outputs, grads = [], []
        for out, grad in zip(self._cache["outputs"], grad_outputs):
            if grad is None:
                continue
            if tuple(grad.shape) != tuple(out.shape):
                raise ShapeMismatchError(f"gradient of size {tuple(grad.shape)} does not match the forward "
                                         f"output of size {tuple(out.shape)}")
            if out.requires_grad:
                outputs.append(out)
                grads.append(grad.to(device=out.device, dtype=out.dtype))

        imgs = self._cache["imgs"]
        self._cache = None  # The autograd graph is freed by the call below
        params = [p for p in self.parameters() if p.requires_grad]
        if len(outputs) == 0:
            return torch.zeros_like(imgs), torch.empty(0, dtype=torch.long), None

        # Reverse-mode accumulation through the step-wise unroll, every step shares the same parameters
        all_grads = torch.autograd.grad(outputs, [imgs] + params, grads, allow_unused=True)
        grad_imgs = all_grads[0] if all_grads[0] is not None else torch.zeros_like(imgs)
        for p, grad in zip(params, all_grads[1:]):
            if grad is None:
                continue
            if p.grad is None:
                p.grad = grad.detach().clone()
            else:
                p.grad.add_(grad)  # In-place so that a flat gradient vector view stays in sync

        return grad_imgs.detach(), torch.empty(0, dtype=torch.long, device=imgs.device), None

    def get_parameters(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Flattens all the model parameters and their gradients into two flat vectors. Every parameter (and
        its .grad) is re-pointed to a slice of these vectors, so an external optimizer can update the model by
        writing to params directly. Call after moving the model to its final device and dtype, and zero
        grad_params in-place (not with set_to_none) before each backward.

        :returns: A tuple (params, grad_params) of 1-dimensional tensors of the same size.
        """
        all_params = list(self.parameters())
        flat_params = torch.cat([p.detach().reshape(-1) for p in all_params])
        flat_grads = torch.zeros_like(flat_params)
        offset = 0
        for p in all_params:
            n = p.numel()
            p.data = flat_params[offset:offset + n].view_as(p)
            p.grad = flat_grads[offset:offset + n].view_as(p)
            offset += n
        logger.debug(f"Flattened {len(all_params)} parameter tensors into {offset} values")
        return flat_params, flat_grads

    def sample(self, image_encoding: torch.Tensor, semantic_words: torch.Tensor = None, opt: Dict = None
               ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Given a batch of image encodings, samples a word sequence for each. Uses greedy (argmax) decoding by
        default, beam search when opt["beam_size"] > 1, or sampling from the predicted distribution when
        opt["temperature"] > 0. Beam search and temperature sampling cannot be combined.

        :param image_encoding: A batch of image encodings of size (N, image_encoding_size).
        :param semantic_words: A long tensor of semantic word ids of size (N, K) or None.
        :param opt: An optional dictionary with keys beam_size (default 1) and temperature (default 0.0).
        :returns:
            - seq: A long tensor of size (seq_length, N) of word ids in [0, vocab_size + 1]. The END token is
                recorded at the step it is chosen, later steps hold 0.
            - seq_logprobs: The log-probability of each chosen word, of size (seq_length, N), 0 after END.
        """
        opt = opt or {}
        beam_size = int(opt.get("beam_size", 1))
        temperature = float(opt.get("temperature", 0.0))
        if beam_size < 1:
            raise ValueError(f"beam_size must be >= 1, got {beam_size}")
        if temperature < 0:
            raise ValueError(f"temperature must be a value >= 0, got {temperature}")
        if beam_size > 1 and temperature > 0:
            raise ValueError(f"temperature sampling is not supported with beam search, got "
                             f"beam_size={beam_size} and temperature={temperature}")
        if beam_size > 1:
            return self.beam_search(image_encoding, semantic_words, beam_size)

        self._check_inputs(image_encoding, None, semantic_words)
        was_training = self.training
        self.eval()  # Switch to eval mode to turn off dropout

        with torch.no_grad():
            imgs = image_encoding.to(device=self.device_param.device, dtype=self.device_param.dtype)
            N = imgs.shape[0]
            semantics = self._prepare_semantics(semantic_words)
            state = self.core.init_hidden(N, imgs)

            seq = torch.zeros(self.seq_length, N, dtype=torch.long, device=imgs.device)
            seq_logprobs = imgs.new_zeros(self.seq_length, N)
            ended = torch.zeros(N, dtype=torch.bool, device=imgs.device)
            tokens = None
            for t in range(self.seq_length):
                xt = self.codec.encode_image(imgs) if t == 0 else self.codec.encode_words(tokens)
                logprobs, _, state = self._step(xt, state, semantics, attend=(t > 0))
                tokens, picked, ended = self._pick(logprobs, ended, temperature)
                seq[t] = tokens
                seq_logprobs[t] = picked

        self.train() if was_training else self.eval()
        return seq, seq_logprobs

    def _beam_round(self, beams: BeamState, logprobs: torch.Tensor, beam_size: int) -> BeamState:
        """
        Advances every example's beams by one round given the log-probabilities of the current step.

        Each live hypothesis proposes its top beam_size outcomes, a finished hypothesis proposes only itself
        (log-prob carried forward unchanged, word id 0). The top beam_size candidates per example by
        cumulative log-probability survive, ties are broken by the lower (beam, outcome) index.

        :param beams: The beam state after the previous round.
        :param logprobs: The log-probabilities of every beam for this step, of size (N * beam_size, V + 1).
        :param beam_size: The number of hypotheses kept per example.
        :returns: A new BeamState, the hidden state rows re-ordered to follow the surviving hypotheses.
        """
        N = beams.logprob_sum.shape[0]
        num_outcomes = logprobs.shape[1]
        top = min(beam_size, num_outcomes)  # The number of candidates proposed by each beam

        # 1). Sort the outcomes of each beam, stable so that equal log-probs keep the lower outcome first
        lp_sorted, columns = torch.sort(logprobs.view(N, beam_size, num_outcomes), dim=-1, descending=True,
                                        stable=True)
        lp_top, columns = lp_sorted[..., :top], columns[..., :top]  # (N, beam_size, top)

        # 2). A finished hypothesis proposes a single candidate that adds nothing to its cumulative log-prob
        carry = torch.full_like(lp_top[0, 0], float("-inf"))
        carry[0] = 0.0
        lp_top = torch.where(beams.finished.unsqueeze(-1), carry, lp_top)

        # 3). Keep the global top beam_size candidates for each example
        candidates = (beams.logprob_sum.unsqueeze(-1) + lp_top).view(N, beam_size * top)
        scores, order = torch.sort(candidates, dim=1, descending=True, stable=True)
        scores, order = scores[:, :beam_size], order[:, :beam_size]  # (N, beam_size)
        parents, ranks = order // top, order % top  # Which beam, which of its proposals

        parent_finished = beams.finished.gather(1, parents)  # (N, beam_size)
        picked_columns = columns.reshape(N, beam_size * top).gather(1, order)
        tokens = self.codec.column_to_token(picked_columns).masked_fill(parent_finished, PAD_TOKEN)
        step_logprobs = lp_top.reshape(N, beam_size * top).gather(1, order)

        # 4). Each surviving hypothesis takes its own copy of its parent's hidden state
        offsets = torch.arange(N, device=parents.device).unsqueeze(1) * beam_size
        hidden = select_hidden(beams.hidden, (offsets + parents).view(-1))

        return BeamState(logprob_sum=scores, finished=parent_finished | (tokens == self.end_token),
                         hidden=hidden, tokens=beams.tokens + [tokens], parents=beams.parents + [parents],
                         logprobs=beams.logprobs + [step_logprobs])

    def beam_search(self, image_encoding: torch.Tensor, semantic_words: torch.Tensor = None,
                    beam_size: int = 5) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Given a batch of image encodings, uses beam search to find the most likely word sequence for each. All
        examples and all of their beams are advanced together in lockstep for exactly seq_length rounds.

        :param image_encoding: A batch of image encodings of size (N, image_encoding_size).
        :param semantic_words: A long tensor of semantic word ids of size (N, K) or None.
        :param beam_size: The number of hypotheses to maintain per example.
        :returns:
            - seq: A long tensor of size (seq_length, N), the best hypothesis of each example.
            - seq_logprobs: The per-step log-probabilities along the best hypothesis, of size (seq_length, N).
        """
        assert beam_size >= 1, f"beam_size must be >= 1, got {beam_size}"
        self._check_inputs(image_encoding, None, semantic_words)
        was_training = self.training
        self.eval()  # Switch to eval mode to turn off dropout

        with torch.no_grad():
            imgs = image_encoding.to(device=self.device_param.device, dtype=self.device_param.dtype)
            N = imgs.shape[0]
            imgs = imgs.repeat_interleave(beam_size, dim=0)  # (N * beam_size, image_encoding_size)
            semantics = self._prepare_semantics(semantic_words, repeat=beam_size)

            # Every example starts from a single hypothesis, the other beams start at -inf so that the first
            # round only expands beam 0
            logprob_sum = imgs.new_full((N, beam_size), float("-inf"))
            logprob_sum[:, 0] = 0.0
            beams = BeamState(logprob_sum=logprob_sum,
                              finished=torch.zeros(N, beam_size, dtype=torch.bool, device=imgs.device),
                              hidden=self.core.init_hidden(N * beam_size, imgs))

            for t in range(self.seq_length):
                if t == 0:
                    xt = self.codec.encode_image(imgs)
                else:
                    xt = self.codec.encode_words(beams.tokens[-1].reshape(-1))
                logprobs, _, hidden = self._step(xt, beams.hidden, semantics, attend=(t > 0))
                beams = self._beam_round(replace(beams, hidden=hidden), logprobs, beam_size)

            seq, seq_logprobs = beams.backtrack()

        self.train() if was_training else self.eval()
        return seq, seq_logprobs
