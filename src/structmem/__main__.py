"""
structmem 包入口点 - 支持 `python -m structmem` 调用
"""

from structmem.main import app

if __name__ == "__main__":
    app()
