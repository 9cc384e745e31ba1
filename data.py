import logging
import math
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

import torch
from torch.utils.data import DataLoader, Dataset, Subset

from config import ELMoConfig
from models.elmo import IGNORE_INDEX

SPLIT_RATIOS = (0.8, 0.1, 0.1)


def build_token_vocab(sentences: Sequence[str], min_count: int, max_size: int, unk: str) -> Dict[str, int]:
    """
    Token vocabulary with the unknown token at id 0.

    Tokens seen at least ``min_count`` times are kept, most frequent first,
    and the vocabulary is capped at ``max_size`` entries.
    """
    counter = Counter(token for sentence in sentences for token in sentence.split())
    counter.pop(unk, None)

    vocab = {unk: 0}
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    for token, count in ranked:
        if len(vocab) >= max_size or count < min_count:
            break
        vocab[token] = len(vocab)
    return vocab


def build_char_vocab(sentences: Sequence[str], max_size: int, specials: Sequence[str]) -> Dict[str, int]:
    """
    Character vocabulary: ``specials`` first (pad, start, end, unk), then
    corpus characters by frequency, capped at ``max_size`` entries.
    """
    vocab = {}
    for char in specials:
        vocab[char] = len(vocab)

    counter = Counter(char for sentence in sentences for char in sentence if not char.isspace())
    for char, _ in sorted(counter.items(), key=lambda item: (-item[1], item[0])):
        if len(vocab) >= max_size:
            break
        if char not in vocab:
            vocab[char] = len(vocab)
    return vocab


def preprocess(sentences: Sequence[str], config: ELMoConfig) -> Tuple[List[str], Dict[str, int], Dict[str, int]]:
    """
    Normalise whitespace, drop sentences too short to carry a language model
    target and build the token and character vocabularies.

    Returns:
        (sentences, token2int, char2int)
    """
    cleaned = []
    for sentence in sentences:
        tokens = sentence.split()
        if len(tokens) >= 2:
            cleaned.append(' '.join(tokens))

    dropped = len(sentences) - len(cleaned)
    if dropped:
        logging.info(f'Dropped {dropped} sentences with fewer than two tokens')
    if not cleaned:
        raise ValueError('corpus has no sentence with at least two tokens')

    token2int = build_token_vocab(cleaned, config.min_count, config.token_vocab_size, config.str_unk)
    char2int = build_char_vocab(
        cleaned,
        config.char_vocab_size,
        [config.char_pad, config.char_start, config.char_end, config.char_unk],
    )
    logging.info(f'{len(cleaned)} sentences, {len(token2int)} tokens, {len(char2int)} characters in vocabulary')
    return cleaned, token2int, char2int


class TokenCharEncoder:
    """Maps tokens to fixed-width character id rows and token ids."""

    def __init__(self, token2int: Dict[str, int], char2int: Dict[str, int], config: ELMoConfig):
        self.token2int = token2int
        self.char2int = char2int
        self.max_len_token = config.max_len_token
        self.char_start = config.char_start
        self.char_end = config.char_end
        self.pad_id = char2int[config.char_pad]
        self.char_unk_id = char2int[config.char_unk]
        self.unk_id = token2int[config.str_unk]

    def token_to_char_ids(self, token: str) -> List[int]:
        # start/end markers are part of the width, so long tokens lose their end marker
        chars = self.char_start + token + self.char_end
        char_ids = [self.char2int.get(c, self.char_unk_id) for c in chars[:self.max_len_token]]
        return char_ids + [self.pad_id] * (self.max_len_token - len(char_ids))

    def encode(self, tokens: Sequence[str]) -> Dict[str, torch.Tensor]:
        chars = [self.token_to_char_ids(token) for token in tokens]
        token_ids = [self.token2int.get(token, self.unk_id) for token in tokens]
        return {
            'chars': torch.tensor(chars, dtype=torch.long).view(len(tokens), self.max_len_token),
            'tokens': torch.tensor(token_ids, dtype=torch.long),
        }


class ELMoTextDataset(Dataset):
    def __init__(self, sentences, token2int, char2int, config):
        self.sentences = list(sentences)
        self.encoder = TokenCharEncoder(token2int, char2int, config)

    def __len__(self):
        return len(self.sentences)

    def __getitem__(self, idx):
        # chars: [n, max_len_token], tokens: [n]
        return self.encoder.encode(self.sentences[idx].split())


def collate_batch(batch: List[Dict[str, torch.Tensor]], pad_char_id: int) -> Dict[str, torch.Tensor]:
    """Pad a list of examples to the longest sentence in the batch."""
    max_seq_len = max(item['tokens'].size(0) for item in batch)
    max_len_token = batch[0]['chars'].size(1)

    batch_chars = torch.full((len(batch), max_seq_len, max_len_token), pad_char_id, dtype=torch.long)
    batch_tokens = torch.full((len(batch), max_seq_len), IGNORE_INDEX, dtype=torch.long)
    lengths = []

    for i, item in enumerate(batch):
        n = item['tokens'].size(0)
        batch_chars[i, :n] = item['chars']
        batch_tokens[i, :n] = item['tokens']
        lengths.append(n)

    return {
        'chars': batch_chars,
        'tokens': batch_tokens,
        'lengths': torch.tensor(lengths, dtype=torch.long),
    }


class BatchCollator:
    def __init__(self, pad_char_id: int):
        self.pad_char_id = pad_char_id

    def __call__(self, batch):
        return collate_batch(batch, self.pad_char_id)


def split_sizes(n_samples: int, ratios: Sequence[float] = SPLIT_RATIOS) -> List[int]:
    """
    Sizes of the train, dev and test splits.

    The first two are floored, the test split takes the remainder so the
    sizes always add up to ``n_samples``.
    """
    if n_samples <= 0:
        raise ValueError(f'number of samples must be positive, got {n_samples}')
    if len(ratios) != 3 or any(r < 0 for r in ratios) or not math.isclose(sum(ratios), 1.0):
        raise ValueError(f'split ratios must be three non-negative numbers summing to 1, got {ratios}')

    sizes = [int(ratios[0] * n_samples), int(ratios[1] * n_samples)]
    sizes.append(n_samples - sum(sizes))
    return sizes


def split_train_dev_test(n_samples: int,
                         ratios: Sequence[float] = SPLIT_RATIOS,
                         generator: Optional[torch.Generator] = None) -> List[List[int]]:
    sizes = split_sizes(n_samples, ratios)
    indices = torch.randperm(n_samples, generator=generator)
    return [split.tolist() for split in torch.split(indices, sizes)]


def build_loaders(dataset: ELMoTextDataset,
                  config: ELMoConfig,
                  generator: Optional[torch.Generator] = None) -> List[DataLoader]:
    """Train, dev and test loaders over a random split of ``dataset``."""
    collate_fn = BatchCollator(dataset.encoder.pad_id)
    loaders = []
    for name, indices in zip(('train', 'dev', 'test'), split_train_dev_test(len(dataset), generator=generator)):
        logging.info(f'{name} split: {len(indices)} sentences')
        loaders.append(DataLoader(
            Subset(dataset, indices),
            batch_size=config.batch_size,
            # RandomSampler rejects an empty dataset
            shuffle=(name == 'train' and len(indices) > 0),
            collate_fn=collate_fn,
            generator=generator if name == 'train' else None,
        ))
    return loaders
