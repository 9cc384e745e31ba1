
import dataclasses
import logging

import numpy as np
import torch

from config import ELMoConfig, default_device
from data import TokenCharEncoder, collate_batch
from pretrain import build_model, load_checkpoint
from utils import load_sentences


class ELMoEmbedder:
    '''
    Contextual embeddings from a trained checkpoint. The model is frozen and
    kept in eval mode.
    '''
    def __init__(self, model, config, token_vocab, char_vocab):
        self.model = model.eval()
        self.config = config
        self.device = config.torch_device()
        self.encoder = TokenCharEncoder(token_vocab, char_vocab, config)
        for param in self.model.parameters():
            param.requires_grad = False

    @classmethod
    def from_checkpoint(cls, checkpoint_path, device=None):
        if device is None:
            device = default_device()
        checkpoint = load_checkpoint(checkpoint_path, map_location=device)

        config = ELMoConfig.from_dict(checkpoint['config'])
        config = dataclasses.replace(config, device=str(device))
        model = build_model(config, checkpoint['token_vocab'], checkpoint['char_vocab'])
        model.load_state_dict(checkpoint['model_state_dict'])
        logging.info(f'Loaded ELMo checkpoint from {checkpoint_path} (epoch {checkpoint["epoch"] + 1})')
        return cls(model, config, checkpoint['token_vocab'], checkpoint['char_vocab'])

    @property
    def num_layers(self):
        return self.model.num_layers + 1

    @property
    def output_dim(self):
        return 2 * self.model.projection_dim

    def batch_to_ids(self, sentences):
        """
        Args:
            sentences: non-empty list of tokenised sentences

        Returns:
            dict with padded 'chars' [batch, seq_len, max_len_token] and 'lengths'
        """
        return collate_batch([self.encoder.encode(tokens) for tokens in sentences], self.encoder.pad_id)

    @torch.no_grad()
    def embed_sentences(self, sentences, batch_size=32, mixed=False):
        """
        One array per sentence, [num_layers, n_tokens, output_dim], or
        [n_tokens, output_dim] when the layers are scalar-mixed.
        """
        results = []
        for start in range(0, len(sentences), batch_size):
            chunk = sentences[start:start + batch_size]
            non_empty = [tokens for tokens in chunk if tokens]
            embedded = iter(self._embed_batch(non_empty, mixed) if non_empty else [])
            for tokens in chunk:
                if tokens:
                    results.append(next(embedded))
                elif mixed:
                    results.append(np.zeros((0, self.output_dim), dtype=np.float32))
                else:
                    results.append(np.zeros((self.num_layers, 0, self.output_dim), dtype=np.float32))
        return results

    def embed_mixed(self, sentences, batch_size=32):
        return self.embed_sentences(sentences, batch_size=batch_size, mixed=True)

    def _embed_batch(self, sentences, mixed):
        batch = self.batch_to_ids(sentences)
        chars = batch['chars'].to(self.device)
        lengths = batch['lengths']

        if mixed:
            mixed_layers = self.model.get_elmo_representations(chars, lengths).cpu()
            return [mixed_layers[i, :n].numpy() for i, n in enumerate(lengths.tolist())]

        representations = self.model(chars, lengths)['representations'].cpu()
        return [representations[:, i, :n].numpy() for i, n in enumerate(lengths.tolist())]


def embed_file(checkpoint_path, input_file, output_file, mixed=False, device=None, batch_size=32):
    """
    Embed every line of a text file and write the arrays to a numpy .npz
    archive under the keys sentence_0, sentence_1, ...

    Returns:
        number of sentences written
    """
    embedder = ELMoEmbedder.from_checkpoint(checkpoint_path, device=device)
    sentences = [line.split() for line in load_sentences(input_file)]
    embeddings = embedder.embed_sentences(sentences, batch_size=batch_size, mixed=mixed)
    np.savez(output_file, **{f'sentence_{i}': array for i, array in enumerate(embeddings)})
    logging.info(f'Wrote {len(embeddings)} sentence embeddings to {output_file}')
    return len(embeddings)
