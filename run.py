# run.py
import uvicorn
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from minemanager.core.config import PORT, HOST, DATA_DIR

if __name__ == "__main__":
    print(f"===========================================================")
    print(f" ⛏️  MINEMANAGER STARTING...")
    print(f" 🏠 API URL: http://{HOST}:{PORT}/api")
    print(f" 📁 Data directory: {DATA_DIR}")
    print(f"===========================================================")

    # "minemanager:create_app" refers to the create_app factory in minemanager/__init__.py
    uvicorn.run(
        "minemanager:create_app",
        host=HOST,
        port=PORT,
        reload=False,
        factory=True
    )
