import sys

from gguf_split.tools.gguf_split import main

if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
