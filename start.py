import os
import uvicorn
from main import app

if __name__ == "__main__":
    # Hosting platforms set the PORT environment variable
    port = int(os.environ.get("PORT", 8080))
    host = os.environ.get("HOST", "0.0.0.0")
    print(f"Starting line service on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
