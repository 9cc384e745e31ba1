"""
Tests for the ELMo model

Tests the character encoder, the unidirectional language models, the full
bidirectional model and the language-model loss.
"""

import pytest
import torch

from models.elmo import (
    IGNORE_INDEX,
    ELMo,
    ELMoCharacterEncoder,
    CharCNNBlock,
    Highway,
    ScalarMix,
    UniLM,
    lm_accuracy,
    lm_loss,
    lm_targets,
    reverse_padded,
)

TOKEN_VOCAB = 30
CHAR_VOCAB = 20


def make_model(num_layers=2):
    torch.manual_seed(0)
    model = ELMo(
        token_vocab_size=TOKEN_VOCAB,
        char_vocab_size=CHAR_VOCAB,
        char_embed_dim=4,
        char_cnn_filters=[[1, 3], [2, 4], [3, 5]],
        num_highways=2,
        projection_dim=8,
        hidden_size=6,
        num_layers=num_layers,
        dropout=0.0,
    )
    return model.eval()


def random_batch(batch_size=2, seq_len=5, word_len=7):
    torch.manual_seed(1)
    chars = torch.randint(0, CHAR_VOCAB, (batch_size, seq_len, word_len))
    tokens = torch.randint(0, TOKEN_VOCAB, (batch_size, seq_len))
    return chars, tokens


class TestCharacterEncoder:
    """Character CNN, highway and projection."""

    def test_cnn_block_shape(self):
        block = CharCNNBlock(in_channels=4, out_channels=6, kernel_size=3)
        out = block(torch.randn(10, 4, 7))

        assert out.shape == (10, 6)
        # tanh then max-pool keeps values in (-1, 1)
        assert out.abs().max() <= 1

    def test_highway_shape(self):
        highway = Highway(5, num_layers=3)

        assert highway(torch.randn(4, 5)).shape == (4, 5)

    def test_highway_closed_gate_carries_input(self):
        highway = Highway(5, num_layers=1)
        with torch.no_grad():
            highway.layers[0].weight.zero_()
            highway.layers[0].bias.fill_(-100.0)
        x = torch.randn(4, 5)

        assert torch.allclose(highway(x), x, atol=1e-6)

    def test_encoder_shape(self):
        encoder = ELMoCharacterEncoder(
            CHAR_VOCAB, char_embed_dim=4, char_cnn_filters=[[1, 3], [2, 4]], num_highways=1, output_dim=8
        )
        chars, _ = random_batch()

        assert encoder.total_filters == 7
        assert encoder(chars).shape == (2, 5, 8)

    def test_default_filters(self):
        encoder = ELMoCharacterEncoder(CHAR_VOCAB)

        assert len(encoder.convolutions) == 6
        assert encoder.total_filters == 525
        assert encoder.projection.out_features == 512


class TestReversePadded:
    """Reversal of padded sequences."""

    def test_reverse_within_length(self):
        x = torch.tensor([[1, 2, 3, 0], [4, 5, 0, 0]])
        lengths = torch.tensor([3, 2])

        assert reverse_padded(x, lengths).tolist() == [[3, 2, 1, 0], [5, 4, 0, 0]]

    def test_involution_with_features(self):
        x = torch.randn(3, 6, 4)
        lengths = torch.tensor([6, 1, 4])

        assert torch.equal(reverse_padded(reverse_padded(x, lengths), lengths), x)


class TestUniLM:
    """Stacked LSTM language model with residual projections."""

    def test_output_layers(self):
        lm = UniLM(num_layers=3, input_dim=8, hidden_size=6, dropout=0.0)
        x = torch.randn(2, 5, 8)
        lengths = torch.tensor([5, 3])

        out = lm(x, lengths)

        assert out.shape == (4, 2, 5, 8)
        assert torch.equal(out[0], x)
        # padding positions are zeroed in every LSTM layer
        assert (out[1:, 1, 3:] == 0).all()


class TestELMo:
    """The full bidirectional model."""

    def test_forward_shapes(self):
        model = make_model()
        chars, _ = random_batch()
        lengths = torch.tensor([5, 3])

        outputs = model(chars, lengths)

        assert outputs["forward_logits"].shape == (2, 5, TOKEN_VOCAB)
        assert outputs["backward_logits"].shape == (2, 5, TOKEN_VOCAB)
        assert outputs["representations"].shape == (3, 2, 5, 16)

    def test_token_layer_shared_by_both_directions(self):
        model = make_model()
        chars, _ = random_batch()
        lengths = torch.tensor([5, 4])

        layer0 = model(chars, lengths)["representations"][0]

        assert torch.allclose(layer0[..., :8], layer0[..., 8:])

    def test_forward_direction_is_causal(self):
        model = make_model()
        chars, _ = random_batch(batch_size=1)
        lengths = torch.tensor([5])
        changed = chars.clone()
        changed[0, -1] = (changed[0, -1] + 1) % CHAR_VOCAB

        with torch.no_grad():
            before = model(chars, lengths)
            after = model(changed, lengths)

        # forward predictions before the last token cannot see it
        assert torch.allclose(before["forward_logits"][:, :-1], after["forward_logits"][:, :-1], atol=1e-6)
        assert not torch.allclose(before["backward_logits"][:, :-1], after["backward_logits"][:, :-1])

    def test_backward_direction_is_causal(self):
        model = make_model()
        chars, _ = random_batch(batch_size=1)
        lengths = torch.tensor([5])
        changed = chars.clone()
        changed[0, 0] = (changed[0, 0] + 1) % CHAR_VOCAB

        with torch.no_grad():
            before = model(chars, lengths)
            after = model(changed, lengths)

        assert torch.allclose(before["backward_logits"][:, 1:], after["backward_logits"][:, 1:], atol=1e-6)

    def test_padding_does_not_change_outputs(self):
        model = make_model()
        chars, _ = random_batch(batch_size=2, seq_len=5)
        short = chars[1:, :3]

        with torch.no_grad():
            batched = model(chars, torch.tensor([5, 3]))["representations"][:, 1, :3]
            alone = model(short, torch.tensor([3]))["representations"][:, 0]

        assert torch.allclose(batched, alone, atol=1e-5)

    def test_elmo_representations(self):
        model = make_model(num_layers=1)
        chars, _ = random_batch()
        lengths = torch.tensor([5, 5])

        mixed = model.get_elmo_representations(chars, lengths)

        assert mixed.shape == (2, 5, 16)

    def test_from_config(self, tiny_config):
        model = ELMo.from_config(tiny_config, token_vocab_size=12, char_vocab_size=9)

        assert model.softmax_proj.out_features == 12
        assert model.char_encoder.total_filters == sum(tiny_config.out_channels)
        assert len(model.forward_lm.lstms) == tiny_config.n_lstm_layers


class TestScalarMix:
    """Softmax-weighted layer combination."""

    def test_initial_weights_average(self):
        mix = ScalarMix(2)
        layers = torch.stack([torch.ones(2, 3), 3 * torch.ones(2, 3)])

        assert torch.allclose(mix(layers), 2 * torch.ones(2, 3))

    def test_gamma_scales(self):
        mix = ScalarMix(3)
        with torch.no_grad():
            mix.gamma.fill_(0.5)

        assert torch.allclose(mix(torch.ones(3, 4)), 0.5 * torch.ones(4))


class TestLanguageModelLoss:
    """Targets, loss and accuracy."""

    def test_targets(self):
        tokens = torch.tensor([[5, 6, 7, IGNORE_INDEX], [8, 9, IGNORE_INDEX, IGNORE_INDEX]])
        lengths = torch.tensor([3, 2])

        forward_targets, backward_targets = lm_targets(tokens, lengths)

        assert forward_targets.tolist() == [[6, 7, -100, -100], [9, -100, -100, -100]]
        assert backward_targets.tolist() == [[-100, 5, 6, -100], [-100, 8, -100, -100]]

    def test_targets_ignore_garbage_padding(self):
        tokens = torch.tensor([[5, 6, 7, 1]])
        lengths = torch.tensor([3])

        forward_targets, backward_targets = lm_targets(tokens, lengths)

        assert forward_targets.tolist() == [[6, 7, -100, -100]]
        assert backward_targets.tolist() == [[-100, 5, 6, -100]]

    def test_loss_and_gradients(self):
        model = make_model().train()
        chars, tokens = random_batch()
        lengths = torch.tensor([5, 3])
        tokens[1, 3:] = IGNORE_INDEX

        outputs = model(chars, lengths)
        loss, forward_loss, backward_loss = lm_loss(outputs, tokens, lengths)
        loss.backward()

        assert torch.isfinite(loss)
        assert loss.item() == pytest.approx((forward_loss.item() + backward_loss.item()) / 2)
        assert model.char_encoder.char_embed.weight.grad is not None
        assert model.backward_lm.lstms[0].weight_ih_l0.grad is not None

    def test_accuracy_counts(self):
        model = make_model()
        chars, tokens = random_batch()
        lengths = torch.tensor([3, 2])

        with torch.no_grad():
            outputs = model(chars, lengths)
        correct, total = lm_accuracy(outputs, tokens, lengths)

        # (3 - 1) + (2 - 1) targets per direction
        assert total == 6
        assert 0 <= correct <= total
