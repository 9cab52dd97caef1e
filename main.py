"""
Entry point for the gguf-metadata-get CLI tool.
Delegates to gguf_meta.cli.main().
"""

from gguf_meta.cli import main as cli_main


def main() -> None:
    cli_main()


if __name__ == "__main__":
    main()
