"""Entry point for running the sender categorizer as a module.

Usage:
    python -m sender_categorizer validate-config
    python -m sender_categorizer --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env (ANTHROPIC_API_KEY) before any other imports

from sender_categorizer.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
