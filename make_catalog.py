from __future__ import annotations

import argparse
import logging
import time
from typing import Optional

from astropy.io import fits

from catalog import build_catalog, write_result
from config import config_from_dict, parse_config
from errors import ConfigurationError
from io_bridge import load_inputs
from wcs_batch import WCSService


def wcs_from_header(header: Optional[fits.Header]) -> Optional[WCSService]:
    # Headers without any CTYPE keyword carry no usable WCS.
    if header is None or not any(key.startswith("CTYPE") for key in header):
        return None
    return WCSService(header)


def main(argv=None):
    ap = argparse.ArgumentParser(description="Measure objects and clumps of a labelled image.")
    ap.add_argument("--config", required=True)
    ap.add_argument("--log-level", default=None,
                    help="Logging level (DEBUG, INFO, WARNING); overrides log_level in the config.")
    args = ap.parse_args(argv)

    cfg = parse_config(args.config)
    level = args.log_level or cfg.get("log_level", "INFO")
    logging.basicConfig(level=str(level).upper(),
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    columns = cfg.get("columns")
    if not columns:
        raise ConfigurationError("columns: at least one column code is required")
    if "inputs" not in cfg:
        raise ConfigurationError("inputs: values, objects and std are required")
    output = str(cfg.get("output", "catalog.fits"))
    config = config_from_dict(cfg)

    t0 = time.time()
    images = load_inputs(cfg["inputs"])
    wcs = wcs_from_header(images.header)
    t_load = time.time()

    result = build_catalog(
        images.values, images.objects, columns,
        clumps=images.clumps,
        sky=images.sky,
        std=images.std,
        wcs=wcs,
        config=config,
        values_unit=images.unit,
        upmask=images.upmask,
    )
    t_measure = time.time()

    write_result(result, output, format=cfg.get("output_format"))
    t_done = time.time()

    print(f"objects={result.plan.nobj} clumps={result.plan.nclumps} "
          f"threads={config.threads} times: load={t_load-t0:.2f}s "
          f"measure={t_measure-t_load:.2f}s write={t_done-t_measure:.2f}s")


if __name__ == "__main__":
    main()
