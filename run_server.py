import os
import pathlib

import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def ssl_options(base_dir: pathlib.Path) -> dict[str, str]:
    """Use ssl/key.pem and ssl/cert.pem when both are present."""
    ssl_keyfile = base_dir / "ssl" / "key.pem"
    ssl_certfile = base_dir / "ssl" / "cert.pem"
    if ssl_keyfile.exists() and ssl_certfile.exists():
        return {"ssl_keyfile": str(ssl_keyfile), "ssl_certfile": str(ssl_certfile)}
    return {}


def main():
    # Get port from environment
    port = int(os.getenv("API_PORT", "8001"))

    # Get host from environment
    host = os.getenv("API_HOST", "127.0.0.1")  # Default to localhost

    reload = os.getenv("API_RELOAD", "false").lower() in ("1", "true", "yes")

    uvicorn.run(
        "mosaic.main:app",
        host=host,
        port=port,
        reload=reload,
        **ssl_options(pathlib.Path(__file__).parent),
    )


if __name__ == "__main__":
    main()
