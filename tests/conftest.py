"""
Shared fixtures: a tiny corpus and a configuration small enough to train
in a couple of seconds on CPU.
"""

import os

import pytest

from config import ELMoConfig

CORPUS = [
    "the cat sat on the mat",
    "the dog sat on the log",
    "a cat saw a dog",
    "the dog saw the cat",
    "a bird sat on a tree",
    "the bird saw the mat",
    "a dog ran to the tree",
    "the cat ran to a log",
    "the mat was red",
    "a log was brown",
    "the tree was tall",
    "a bird ran away",
    "the dog was happy",
    "the cat was sad",
    "a cat sat on a log",
    "the bird sat on the dog",
    "a tree saw a bird",
    "the log ran to the mat",
    "a dog sat on a cat",
    "the mat saw the tree",
]


def make_config(corpus_file, output_dir, **overrides):
    params = dict(
        corpus_file=str(corpus_file),
        output_dir=str(output_dir),
        token_vocab_size=50,
        char_vocab_size=40,
        min_count=1,
        max_len_token=8,
        char_embedding_dim=4,
        out_channels=[3, 4],
        kernel_size=[1, 2],
        highways=1,
        in_dim=8,
        hidden_dim=6,
        n_lstm_layers=2,
        dropout=0.0,
        batch_size=2,
        max_iter=2,
        learning_rate=0.01,
        device="cpu",
    )
    params.update(overrides)
    return ELMoConfig(**params)


@pytest.fixture
def corpus_file(tmp_path):
    path = tmp_path / "corpus.txt"
    path.write_text("\n".join(CORPUS) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def tiny_config(tmp_path, corpus_file):
    return make_config(corpus_file, tmp_path / "out")


@pytest.fixture
def trained_checkpoint(tiny_config):
    """Run a one-epoch training and return the checkpoint path."""
    from pretrain import CHECKPOINT_NAME, run_training

    config = make_config(tiny_config.corpus_file, tiny_config.output_dir, max_iter=1)
    run_training(config)
    return os.path.join(config.output_dir, CHECKPOINT_NAME)
