import sys, os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.realpath(__file__))))

import pytest
import torch
from lm_models import LanguageModel


@pytest.fixture(autouse=True)
def seed():
    torch.manual_seed(0)


@pytest.fixture(params=[torch.float32, torch.float64], ids=["float32", "float64"])
def dtype(request):
    return request.param


@pytest.fixture
def small_opt():
    """
    Options of the small model used for the API and masking scenarios.
    """
    return {"vocab_size": 5, "word_encoding_size": 11, "image_encoding_size": 11, "rnn_size": 8,
            "num_layers": 1, "dropout": 0.0, "seq_length": 7, "batch_size": 10}


@pytest.fixture
def make_lm():
    """
    Returns a factory that builds a LanguageModel from keyword options and casts it to a dtype.
    """
    def _make(dtype=torch.float64, **opt):
        return LanguageModel(opt).to(dtype)
    return _make


@pytest.fixture
def padded_seq():
    """
    A (7, 10) batch of word ids in 1..5 where column 0 is padded from row 3 and column 5 from row 4.
    """
    seq = torch.randint(1, 6, (7, 10))
    seq[3:, 0] = 0
    seq[4:, 5] = 0
    return seq
