from __future__ import annotations

import argparse
import pprint
from dataclasses import asdict

from quad_stoch_signals.config import config_signature, load_config
from quad_stoch_signals.models import BAND_PARAMS


def main():
    p = argparse.ArgumentParser(description="Print the signal config and its signature")
    p.add_argument("--config", help="Path to YAML config")
    args = p.parse_args()

    cfg = load_config(args.config)

    print("SIGNAL CONFIG:")
    pprint.pprint(asdict(cfg.signal))
    print("\nBANDS (k, d, smoothing):")
    pprint.pprint({b.value: params for b, params in BAND_PARAMS.items()})
    print("\nSIGNATURE:", config_signature(cfg.signal))


if __name__ == "__main__":
    main()
