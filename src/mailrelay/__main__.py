"""Entry point for running mailrelay as a module.

Usage:
    python -m mailrelay validate-config
    python -m mailrelay --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mailrelay.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
