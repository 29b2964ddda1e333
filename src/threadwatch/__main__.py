from __future__ import annotations

from threadwatch.cli import main


if __name__ == "__main__":
    main()
