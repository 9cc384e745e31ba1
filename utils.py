import torch
import numpy as np
import os
import logging
import json
from typing import List, Dict


def setup_logging(log_dir: str, log_filename: str) -> None:
    """
    Configure root logging to a file and the console.

    Args:
        log_dir: directory for the log file
        log_filename: log file name
    """
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logging.basicConfig(
        format='%(asctime)s - %(levelname)s - %(message)s',
        level=logging.INFO,
        handlers=[
            logging.FileHandler(os.path.join(log_dir, log_filename)),
            logging.StreamHandler()
        ],
        force=True
    )


def load_sentences(corpus_file: str) -> List[str]:
    """
    Read a corpus with one sentence per line.

    Args:
        corpus_file: path to a UTF-8 text file

    Returns:
        list of raw lines without trailing newlines
    """
    with open(corpus_file, 'r', encoding='utf-8') as f:
        return [line.rstrip('\n') for line in f]


def save_vocab(vocab: Dict[str, int], vocab_path: str) -> None:
    """
    Save a vocabulary to a JSON file.

    Args:
        vocab: vocabulary mapping
        vocab_path: destination path
    """
    os.makedirs(os.path.dirname(vocab_path) or '.', exist_ok=True)
    with open(vocab_path, 'w', encoding='utf-8') as f:
        json.dump(vocab, f, ensure_ascii=False, indent=2)


def load_vocab(vocab_path: str) -> Dict[str, int]:
    with open(vocab_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_metrics(metrics: Dict, save_path: str) -> None:
    os.makedirs(os.path.dirname(save_path) or '.', exist_ok=True)
    with open(save_path, 'w', encoding='utf-8') as f:
        json.dump(metrics, f, indent=2)


def load_metrics(metrics_path: str) -> Dict:
    with open(metrics_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def set_seed(seed: int) -> None:
    """
    Seed every random number generator used during training.

    Args:
        seed: random seed
    """
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)
    np.random.seed(seed)


def count_parameters(model: torch.nn.Module) -> int:
    """Number of trainable parameters."""
    return sum(p.numel() for p in model.parameters() if p.requires_grad)


def get_learning_rate(optimizer: torch.optim.Optimizer) -> float:
    for param_group in optimizer.param_groups:
        return param_group['lr']
