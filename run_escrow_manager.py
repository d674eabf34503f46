from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

from escrow_manager.service import main


if __name__ == "__main__":
    raise SystemExit(main())
