#!/usr/bin/env python3
"""Label Grabber — точка входа.

Запуск:
    python main.py -i data/input -o output/results.csv
    python main.py --quality -i photo.jpg
    python main.py --help
"""

import sys
from pathlib import Path

# Добавляем src в путь для прямого запуска
sys.path.insert(0, str(Path(__file__).parent / "src"))

from label_grabber.cli import main

if __name__ == "__main__":
    sys.exit(main())
