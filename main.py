from __future__ import annotations

from devops_copilot.main import main


if __name__ == "__main__":
  main()
