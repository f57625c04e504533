"""支持 `python -m ag_bridge`。"""

from __future__ import annotations

from ag_bridge.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
