
import torch
import torch.nn as nn
import torch.nn.functional as F
from torch.nn.utils.rnn import pack_padded_sequence, pad_packed_sequence

# Targets with this value are skipped by the loss and the accuracy
IGNORE_INDEX = -100


class CharCNNBlock(nn.Module):
    '''
    Narrow convolution over the characters of a token followed by tanh and
    max-pooling over time, giving one feature per filter.
    '''
    def __init__(self, in_channels, out_channels, kernel_size):
        super().__init__()
        self.conv = nn.Conv1d(in_channels, out_channels, kernel_size)

    def forward(self, x):
        # x: [N, char_embed_dim, word_len]
        conv_output = torch.tanh(self.conv(x))  # [N, out_channels, word_len - kernel_size + 1]
        return torch.max(conv_output, dim=-1)[0]  # [N, out_channels]


class Highway(nn.Module):
    def __init__(self, input_dim, num_layers=1):
        super().__init__()
        self.input_dim = input_dim
        self.layers = nn.ModuleList([nn.Linear(input_dim, input_dim * 2) for _ in range(num_layers)])

    def forward(self, x):
        for layer in self.layers:
            projected = layer(x)
            transform_gate = torch.sigmoid(projected[..., :self.input_dim])
            carry_gate = 1 - transform_gate
            nonlinear = torch.relu(projected[..., self.input_dim:])
            x = transform_gate * nonlinear + carry_gate * x
        return x


class ELMoCharacterEncoder(nn.Module):
    def __init__(self, char_vocab_size, char_embed_dim=15,
                 char_cnn_filters=((1, 25), (2, 50), (3, 75), (4, 100), (5, 125), (6, 150)),
                 num_highways=1, output_dim=512):
        super().__init__()
        self.char_embed = nn.Embedding(char_vocab_size, char_embed_dim)

        # Character CNN layers, one per (kernel_size, num_filters)
        self.convolutions = nn.ModuleList([
            CharCNNBlock(char_embed_dim, num_filters, kernel_size)
            for kernel_size, num_filters in char_cnn_filters
        ])

        self.total_filters = sum(f[1] for f in char_cnn_filters)
        self.highways = Highway(self.total_filters, num_layers=num_highways)
        self.projection = nn.Linear(self.total_filters, output_dim)
        self.output_dim = output_dim

    def forward(self, chars):
        # chars: [batch_size, seq_len, word_len]
        batch_size, seq_len, word_len = chars.size()
        chars = chars.view(-1, word_len)  # [batch_size * seq_len, word_len]

        char_embeds = self.char_embed(chars)  # [batch_size * seq_len, word_len, char_embed_dim]
        char_embeds = char_embeds.transpose(1, 2)  # [batch_size * seq_len, char_embed_dim, word_len]

        conv_outputs = [conv(char_embeds) for conv in self.convolutions]

        char_embeddings = torch.cat(conv_outputs, dim=-1)  # [batch_size * seq_len, total_filters]
        char_embeddings = self.highways(char_embeddings)
        char_embeddings = self.projection(char_embeddings)  # [batch_size * seq_len, output_dim]

        return char_embeddings.view(batch_size, seq_len, -1)


class UniLM(nn.Module):
    '''
    One direction of the language model: stacked LSTMs, each projected back
    to the input size and added to its input.
    '''
    def __init__(self, num_layers, input_dim, hidden_size, dropout=0.1):
        super().__init__()
        self.lstms = nn.ModuleList([
            nn.LSTM(input_dim, hidden_size, batch_first=True) for _ in range(num_layers)
        ])
        self.projections = nn.ModuleList([
            nn.Linear(hidden_size, input_dim) for _ in range(num_layers)
        ])
        self.dropout = nn.Dropout(dropout)

    def forward(self, x, lengths):
        # x: [batch_size, seq_len, input_dim]
        seq_len = x.size(1)
        mask = padding_mask(lengths, seq_len).to(x.device).unsqueeze(-1).to(x.dtype)

        outputs = [x]
        for lstm, projection in zip(self.lstms, self.projections):
            packed = pack_padded_sequence(x, lengths.cpu(), batch_first=True, enforce_sorted=False)
            lstm_outputs, _ = lstm(packed)
            lstm_outputs, _ = pad_packed_sequence(lstm_outputs, batch_first=True, total_length=seq_len)

            out = (projection(lstm_outputs) + x) * mask
            outputs.append(out)
            x = self.dropout(out)

        return torch.stack(outputs)  # [num_layers + 1, batch_size, seq_len, input_dim]


class ScalarMix(nn.Module):
    def __init__(self, num_layers):
        super().__init__()
        self.scalar_parameters = nn.Parameter(torch.zeros(num_layers))
        self.gamma = nn.Parameter(torch.ones(1))

    def forward(self, layers):
        # layers: [num_layers, ...]
        normed_weights = torch.softmax(self.scalar_parameters, dim=0)
        normed_weights = normed_weights.view(-1, *([1] * (layers.dim() - 1)))
        return self.gamma * (normed_weights * layers).sum(dim=0)


def padding_mask(lengths, seq_len):
    '''True at real token positions, False at padding.'''
    positions = torch.arange(seq_len, device=lengths.device).unsqueeze(0)
    return positions < lengths.unsqueeze(1)


def reverse_padded(x, lengths):
    '''
    Reverse every sequence of x ([batch_size, seq_len, ...]) within its own
    length, padding stays at the end.
    '''
    batch_size, seq_len = x.shape[:2]
    lengths = lengths.to(x.device).unsqueeze(1)
    positions = torch.arange(seq_len, device=x.device).unsqueeze(0).expand(batch_size, seq_len)
    reversed_positions = torch.where(positions < lengths, lengths - 1 - positions, positions)
    index = reversed_positions.view(batch_size, seq_len, *([1] * (x.dim() - 2))).expand_as(x)
    return x.gather(1, index)


class ELMo(nn.Module):
    def __init__(self, token_vocab_size, char_vocab_size, char_embed_dim=15,
                 char_cnn_filters=((1, 25), (2, 50), (3, 75), (4, 100), (5, 125), (6, 150)),
                 num_highways=1, projection_dim=512, hidden_size=4096, num_layers=2, dropout=0.1):
        super().__init__()
        self.char_encoder = ELMoCharacterEncoder(
            char_vocab_size,
            char_embed_dim=char_embed_dim,
            char_cnn_filters=char_cnn_filters,
            num_highways=num_highways,
            output_dim=projection_dim,
        )

        # Separate forward and backward language models
        self.forward_lm = UniLM(num_layers, projection_dim, hidden_size, dropout)
        self.backward_lm = UniLM(num_layers, projection_dim, hidden_size, dropout)
        self.dropout = nn.Dropout(dropout)

        # Softmax layer shared by both directions
        self.softmax_proj = nn.Linear(projection_dim, token_vocab_size)

        # Scalar parameters for computing weighted sum of layers
        self.scalar_mix = ScalarMix(num_layers + 1)
        self.num_layers = num_layers
        self.projection_dim = projection_dim

    @classmethod
    def from_config(cls, config, token_vocab_size, char_vocab_size):
        return cls(
            token_vocab_size=token_vocab_size,
            char_vocab_size=char_vocab_size,
            char_embed_dim=config.char_embedding_dim,
            char_cnn_filters=tuple(zip(config.kernel_size, config.out_channels)),
            num_highways=config.highways,
            projection_dim=config.in_dim,
            hidden_size=config.hidden_dim,
            num_layers=config.n_lstm_layers,
            dropout=config.dropout,
        )

    def forward(self, chars, lengths):
        # Get character-level token embeddings
        token_embeddings = self.char_encoder(chars)  # [batch_size, seq_len, projection_dim]

        forward_layers = self.forward_lm(token_embeddings, lengths)

        # The backward model reads each sentence right to left
        backward_layers = self.backward_lm(reverse_padded(token_embeddings, lengths), lengths)
        backward_layers = torch.stack([reverse_padded(layer, lengths) for layer in backward_layers])

        forward_logits = self.softmax_proj(self.dropout(forward_layers[-1]))
        backward_logits = self.softmax_proj(self.dropout(backward_layers[-1]))

        return {
            'forward_logits': forward_logits,
            'backward_logits': backward_logits,
            # [num_layers + 1, batch_size, seq_len, 2 * projection_dim]
            'representations': torch.cat([forward_layers, backward_layers], dim=-1),
        }

    def get_elmo_representations(self, chars, lengths):
        outputs = self.forward(chars, lengths)
        return self.scalar_mix(outputs['representations'])


def lm_targets(tokens, lengths):
    '''
    Forward targets are the next token, backward targets the previous one.
    Positions without a target hold IGNORE_INDEX.
    '''
    batch_size, seq_len = tokens.shape
    mask = padding_mask(lengths.to(tokens.device), seq_len)
    ignore = tokens.new_full((batch_size, 1), IGNORE_INDEX)

    forward_targets = torch.cat([tokens[:, 1:], ignore], dim=1).masked_fill(~mask, IGNORE_INDEX)
    backward_targets = torch.cat([ignore, tokens[:, :-1]], dim=1).masked_fill(~mask, IGNORE_INDEX)

    # the last real token has no successor even when followed by padding
    last = (lengths.to(tokens.device) - 1).clamp(min=0).unsqueeze(1)
    forward_targets = forward_targets.scatter(1, last, IGNORE_INDEX)
    return forward_targets, backward_targets


def lm_loss(outputs, tokens, lengths):
    '''Mean of the forward and backward cross-entropy.'''
    forward_targets, backward_targets = lm_targets(tokens, lengths)
    vocab_size = outputs['forward_logits'].size(-1)

    forward_loss = F.cross_entropy(
        outputs['forward_logits'].reshape(-1, vocab_size),
        forward_targets.reshape(-1),
        ignore_index=IGNORE_INDEX,
    )
    backward_loss = F.cross_entropy(
        outputs['backward_logits'].reshape(-1, vocab_size),
        backward_targets.reshape(-1),
        ignore_index=IGNORE_INDEX,
    )
    return (forward_loss + backward_loss) / 2, forward_loss, backward_loss


def lm_accuracy(outputs, tokens, lengths):
    '''(correct, total) next/previous token predictions over both directions.'''
    correct = 0
    total = 0
    for logits, targets in zip((outputs['forward_logits'], outputs['backward_logits']),
                               lm_targets(tokens, lengths)):
        valid = targets != IGNORE_INDEX
        predicted = logits.argmax(dim=-1)
        correct += (predicted[valid] == targets[valid]).sum().item()
        total += valid.sum().item()
    return correct, total
