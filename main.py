import sys
from dotenv import load_dotenv

load_dotenv(override=True)

from ephemtls.config import load_config
from ephemtls.core import run_server
from ephemtls.guard import IntentionalPanicError, recover
from ephemtls.tls import CredentialError

def main():
    config = load_config()
    try:
        run_server(config)
    except CredentialError as e:
        print(f"▸ Could not create server credential: {e}", file=sys.stderr)
        sys.exit(2)
    except IntentionalPanicError as e:
        # serve_forever already attached a stack; anything else gets one here
        if e.stack is None:
            e = recover(e)
        print(f"▸ {e}", file=sys.stderr)
        sys.exit(1)

if __name__ == "__main__":
    main()
