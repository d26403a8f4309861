"""CLI: replay recorded flow readings, run a water-balance ledger, build VRI zones."""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from .config import VigorBandConfig
from .engine import IrrigationEngine
from .errors import IrrigationEngineError
from .readings import frame_to_payloads, load_readings_csv
from .registry import InMemoryDeviceRegistry
from .vri import build_zones, summarize_zones
from .water_balance import WaterBalanceCalculator

log = logging.getLogger(__name__)


def _existing(path_str: str) -> Path:
    path = Path(path_str).expanduser().resolve()
    if not path.exists():
        sys.exit(f"File not found: {path}")
    return path


def cmd_replay(args) -> int:
    registry = InMemoryDeviceRegistry.load_json(_existing(args.registry))
    engine = IrrigationEngine(registry)
    df = load_readings_csv(str(_existing(args.readings)))
    if df.empty:
        sys.exit("No readings in file.")

    accepted = rejected = 0
    for payload in frame_to_payloads(df):
        try:
            result = engine.ingest_reading(args.token, payload)
        except IrrigationEngineError as e:
            rejected += 1
            log.warning(f"Reading rejected: {e}")
            continue
        accepted += result.accepted
        rejected += not result.accepted
        if result.dropped_reason:
            print(f"Dropped session: {result.dropped_reason}")

    if args.stop:
        for zone in {z.zone_id for d in registry.devices() for z in d.zones.values()}:
            engine.stop_session(zone)

    events = [e for f in registry.fields() for e in engine.store.list_events(f.field_id)]
    print(f"Readings: {accepted} accepted, {rejected} rejected | Events: {len(events)}")
    for e in events:
        print(f"  {e.zone_id} {e.start_time:%Y-%m-%d %H:%M} -> {e.end_time:%H:%M} "
              f"{e.duration_minutes:.0f} min  {e.total_gallons:.1f} gal  "
              f"avg {e.avg_flow_gpm:.2f} gpm")

    if args.output:
        out = Path(args.output).expanduser().resolve()
        out.write_text(json.dumps([e.to_dict() for e in events], indent=2), encoding="utf-8")
        print(f"Saved: {out}")
    return 0


def cmd_ledger(args) -> int:
    df = pd.read_csv(_existing(args.climate))
    state, ledger = WaterBalanceCalculator().run_ledger(args.field, df)
    if ledger.empty:
        sys.exit("No days in ledger.")

    cols = ["day", "growth_stage", "crop_et_mm", "irrigation_mm", "rainfall_mm",
            "cumulative_deficit_mm", "layer_surface_pct", "layer_mid_pct", "layer_deep_pct"]
    print(ledger[cols].to_string(index=False))
    print(f"Final deficit: {state.cumulative_deficit_mm:.1f} mm")

    if args.output:
        out = Path(args.output).expanduser().resolve()
        ledger.to_csv(out, index=False)
        print(f"Saved: {out}")
    return 0


def cmd_vri(args) -> int:
    path = _existing(args.ndvi)
    ndvi = np.load(path) if path.suffix == ".npy" else np.loadtxt(path, delimiter=",", ndmin=2)
    zones = build_zones(ndvi, VigorBandConfig(min_zone_cells=args.min_cells),
                        field_area_acres=args.acres)
    for z in zones:
        print(f"{z.zone_name:>8}  {z.vigor_level:<12} {z.irrigation_multiplier_pct:>5.0f}%  "
              f"{z.area_acres:6.2f} ac  NDVI {z.mean_ndvi:.2f}")
    print(summarize_zones(zones).to_string(index=False))

    if args.output:
        out = Path(args.output).expanduser().resolve()
        out.write_text(json.dumps([z.to_dict() for z in zones], indent=2), encoding="utf-8")
        print(f"Saved: {out}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)
    p = argparse.ArgumentParser(description="Irrigation engine")
    sub = p.add_subparsers(dest="command", required=True)

    r = sub.add_parser("replay", help="Replay a flow-meter CSV through session detection")
    r.add_argument("--registry", required=True, help="Device registry JSON")
    r.add_argument("--readings", required=True, help="Flow readings CSV")
    r.add_argument("--token", required=True, help="Webhook token of the recording device")
    r.add_argument("--stop", action="store_true", help="Stop open sessions at end of file")
    r.add_argument("--output", help="Write events as JSON")
    r.set_defaults(func=cmd_replay)

    l = sub.add_parser("ledger", help="Run a daily water-balance ledger")
    l.add_argument("--climate", required=True,
                   help="CSV with date, reference_et_mm[, rainfall_mm, irrigation_mm]")
    l.add_argument("--field", default="field")
    l.add_argument("--output", help="Write ledger CSV")
    l.set_defaults(func=cmd_ledger)

    v = sub.add_parser("vri", help="Build VRI zones from an NDVI grid")
    v.add_argument("--ndvi", required=True, help="NDVI grid (.npy or CSV)")
    v.add_argument("--acres", type=float, default=None, help="Field area")
    v.add_argument("--min-cells", type=int, default=1)
    v.add_argument("--output", help="Write zones as JSON")
    v.set_defaults(func=cmd_vri)

    args = p.parse_args(argv)
    try:
        return args.func(args)
    except IrrigationEngineError as e:
        sys.exit(f"Error: {e}")


if __name__ == "__main__":
    sys.exit(main())
