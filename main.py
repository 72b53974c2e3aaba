#!/usr/bin/env python3
"""
Главный файл для запуска бота через кнопку Play в IDE
"""

import sys
import os

# Добавляем корневую директорию в PYTHONPATH
current_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, current_dir)

# Устанавливаем рабочую директорию
os.chdir(current_dir)

from imageguard.bot import run

if __name__ == "__main__":
    sys.exit(run())
