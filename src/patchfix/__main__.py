from __future__ import annotations

from patchfix.cli import main


if __name__ == "__main__":
    main()
