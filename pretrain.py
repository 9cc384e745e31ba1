
import math
import os
import logging

import torch
from tqdm import tqdm

from config import ELMoConfig
from data import ELMoTextDataset, build_loaders, preprocess
from models.elmo import ELMo, lm_accuracy, lm_loss
from utils import (
    count_parameters,
    get_learning_rate,
    load_sentences,
    save_metrics,
    save_vocab,
    set_seed,
    setup_logging,
)

CHECKPOINT_NAME = 'elmo_model.pt'
METRICS_NAME = 'metrics.json'


def build_model(config, token_vocab, char_vocab):
    return ELMo.from_config(config, len(token_vocab), len(char_vocab)).to(config.torch_device())


def save_checkpoint(path, model, optimizer, epoch, valid_loss, config, token_vocab, char_vocab):
    torch.save({
        'epoch': epoch,
        'model_state_dict': model.state_dict(),
        'optimizer_state_dict': optimizer.state_dict(),
        'valid_loss': valid_loss,
        'config': config.to_dict(),
        'token_vocab': token_vocab,
        'char_vocab': char_vocab,
    }, path)


def load_checkpoint(path, map_location='cpu'):
    return torch.load(path, map_location=map_location, weights_only=True)


def train_epoch(model, loader, optimizer, config, epoch):
    model.train()
    device = config.torch_device()
    total_loss = 0

    for batch in tqdm(loader, desc=f'Epoch {epoch+1}/{config.max_iter}'):
        chars = batch['chars'].to(device)
        tokens = batch['tokens'].to(device)
        lengths = batch['lengths']

        optimizer.zero_grad()

        outputs = model(chars, lengths)
        loss, _, _ = lm_loss(outputs, tokens, lengths)
        loss.backward()

        # Gradient clipping
        torch.nn.utils.clip_grad_norm_(model.parameters(), config.max_grad_norm)

        optimizer.step()
        total_loss += loss.item()

    return total_loss / len(loader)


@torch.no_grad()
def evaluate(model, loader, device):
    """
    Loss, perplexity and next/previous token accuracy over a loader.

    Returns None when the loader has no batches.
    """
    if len(loader) == 0:
        return None

    model.eval()
    total_loss = 0
    correct = 0
    total = 0

    for batch in loader:
        chars = batch['chars'].to(device)
        tokens = batch['tokens'].to(device)
        lengths = batch['lengths']

        outputs = model(chars, lengths)
        loss, _, _ = lm_loss(outputs, tokens, lengths)
        total_loss += loss.item()

        batch_correct, batch_total = lm_accuracy(outputs, tokens, lengths)
        correct += batch_correct
        total += batch_total

    avg_loss = total_loss / len(loader)
    return {
        'loss': avg_loss,
        'perplexity': math.exp(avg_loss),
        'accuracy': correct / total if total else 0.0,
    }


def run_training(config: ELMoConfig):
    """
    Train on the train split, keep the checkpoint with the lowest dev loss
    and report the test metrics of that checkpoint.
    """
    setup_logging(config.output_dir, 'training.log')
    set_seed(config.seed)
    generator = torch.Generator().manual_seed(config.seed)
    device = config.torch_device()

    sentences = load_sentences(config.corpus_file)
    sentences, token_vocab, char_vocab = preprocess(sentences, config)
    save_vocab(token_vocab, os.path.join(config.output_dir, 'token_vocab.json'))
    save_vocab(char_vocab, os.path.join(config.output_dir, 'char_vocab.json'))

    dataset = ELMoTextDataset(sentences, token_vocab, char_vocab, config)
    train_loader, valid_loader, test_loader = build_loaders(dataset, config, generator)
    if len(train_loader) == 0:
        raise ValueError(f'training split is empty, {len(dataset)} sentences are not enough')
    if len(valid_loader) == 0:
        logging.warning('Dev split is empty, selecting checkpoints on training loss')

    model = build_model(config, token_vocab, char_vocab)
    optimizer = torch.optim.Adam(model.parameters(), lr=config.learning_rate)
    logging.info(f'Model has {count_parameters(model)} trainable parameters, training on {device}')

    checkpoint_path = os.path.join(config.output_dir, CHECKPOINT_NAME)
    selection_split = 'dev' if len(valid_loader) else 'train'
    best_loss = float('inf')
    best_epoch = None
    best_train_loss = None

    for epoch in range(config.max_iter):
        train_loss = train_epoch(model, train_loader, optimizer, config, epoch)
        valid_metrics = evaluate(model, valid_loader, device)
        selection_loss = valid_metrics['loss'] if valid_metrics else train_loss

        logging.info(f'Epoch {epoch+1}/{config.max_iter}:')
        logging.info(f'Average training loss: {train_loss:.4f}, learning rate: {get_learning_rate(optimizer)}')
        if valid_metrics:
            logging.info(f'Average validation loss: {selection_loss:.4f}, '
                         f'perplexity: {valid_metrics["perplexity"]:.2f}, '
                         f'accuracy: {valid_metrics["accuracy"]:.4f}')

        # Save best model
        if selection_loss < best_loss:
            best_loss = selection_loss
            best_epoch = epoch
            best_train_loss = train_loss
            save_checkpoint(checkpoint_path, model, optimizer, epoch, best_loss,
                            config, token_vocab, char_vocab)
            logging.info(f'Model saved to {checkpoint_path}')

    if best_epoch is None:
        # every epoch produced a non-finite loss
        best_epoch = config.max_iter - 1
        best_train_loss = train_loss
        save_checkpoint(checkpoint_path, model, optimizer, best_epoch, best_loss,
                        config, token_vocab, char_vocab)

    checkpoint = load_checkpoint(checkpoint_path, map_location=device)
    model.load_state_dict(checkpoint['model_state_dict'])
    test_metrics = evaluate(model, test_loader, device)

    metrics = {
        'best_epoch': best_epoch + 1,
        'selection_split': selection_split,
        # losses of the selected epoch
        'train_loss': best_train_loss,
        'valid_loss': best_loss if selection_split == 'dev' else None,
        'test': test_metrics,
    }
    save_metrics(metrics, os.path.join(config.output_dir, METRICS_NAME))
    if test_metrics:
        logging.info(f'Test loss: {test_metrics["loss"]:.4f}, accuracy: {test_metrics["accuracy"]:.4f}')
    return metrics
