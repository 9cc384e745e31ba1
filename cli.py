from __future__ import annotations

import json
from pathlib import Path

import typer

from config import ConfigError, load_config

app = typer.Typer(no_args_is_help=True)


@app.callback()
def _root() -> None:
    """ELMo trainer: character-aware bidirectional language model."""
    return


@app.command("train")
def train(
    config_path: Path = typer.Argument(..., help="JSON config with corpus_file, output_dir and optional hyperparameters"),
) -> None:
    from pretrain import run_training

    try:
        config = load_config(str(config_path))
    except (ConfigError, FileNotFoundError) as e:
        typer.echo(f"invalid configuration: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(json.dumps(config.to_dict(), indent=2))
    try:
        metrics = run_training(config)
    except (ValueError, FileNotFoundError) as e:
        typer.echo(f"training failed: {e}", err=True)
        raise typer.Exit(code=1)

    test = metrics["test"]
    if test is not None:
        typer.echo(f"got {test['accuracy']:.4f} acc on test set (loss {test['loss']:.4f}, perplexity {test['perplexity']:.2f})")


@app.command("embed")
def embed(
    checkpoint: Path = typer.Argument(..., help="Checkpoint written by the train command"),
    input_file: Path = typer.Argument(..., help="Text file, one whitespace-tokenised sentence per line"),
    output_file: Path = typer.Argument(..., help="Output .npz archive"),
    mixed: bool = typer.Option(False, help="Scalar-mix the layers instead of returning all of them"),
    batch_size: int = typer.Option(32, min=1, help="Sentences per forward pass"),
    device: str | None = typer.Option(None, help="torch device, defaults to cuda when available"),
) -> None:
    from embed import embed_file

    n = embed_file(
        str(checkpoint), str(input_file), str(output_file), mixed=mixed, device=device, batch_size=batch_size
    )
    typer.echo(f"Wrote {n} sentences -> {output_file}")


if __name__ == "__main__":
    app()
