#!/usr/bin/env python3
"""
Запуск воркера капчи (восстановление + фоновые очистки)
"""

import sys
import os
import asyncio

# Добавляем корневую директорию в PYTHONPATH
current_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, current_dir)

from gatebot.worker import main

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🛑 Воркер остановлен пользователем")
