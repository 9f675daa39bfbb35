import os

import uvicorn


def main():
    uvicorn.run(
        "plato.main:app",
        host=os.getenv("PLATO_HOST", "127.0.0.1"),
        port=int(os.getenv("PLATO_PORT", "8000")),
        reload=os.getenv("PLATO_RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    main()
