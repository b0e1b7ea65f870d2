import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sdm_adapter import SdmDeviceBackend
from sdm_gateway import OAuthAuthenticator, SdmGateway, load_config


async def _list() -> None:
    cfg = load_config()
    auth = OAuthAuthenticator.from_config(cfg)
    backend = SdmDeviceBackend(SdmGateway.from_config(cfg, auth))
    try:
        plugs = await backend.list()
    finally:
        await backend.aclose()
        await auth.aclose()
    print(f"plugs: {len(plugs)}")
    for plug in sorted(plugs, key=lambda p: (p.name, p.id)):
        print(f"{plug.id}\t{plug.name}\ton={plug.on}\tonline={plug.online}")


def main() -> None:
    asyncio.run(_list())


if __name__ == "__main__":
    main()
