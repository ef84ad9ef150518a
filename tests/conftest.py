import os
import sys


# 未安装包时也能直接 `pytest` 运行：把 src/ 放到 import 路径最前面。
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
