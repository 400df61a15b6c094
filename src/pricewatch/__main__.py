import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "pricewatch.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
    )
