#!/usr/bin/env python3
"""Console monitor: connect to the shutter tester and print each new measurement.

Usage:
    python run_monitor.py              # auto-discover the first USB serial device
    python run_monitor.py --fake       # simulated tester, no hardware needed
    python run_monitor.py --duration 30 --watch
"""

import argparse
import logging
import sys
import time

from shutter_lib import (
    ConnectionManager,
    ConnectionState,
    PortMonitor,
    PySerialDeviceProvider,
    create_manager,
)


def build_fake_manager() -> ConnectionManager:
    """Manager wired to the simulated tester from fakes/."""
    from fakes.fake_usb import (
        PICO,
        FakeDeviceProvider,
        FakePermissionGate,
        FakeTransportProvider,
    )

    return ConnectionManager(
        device_provider=FakeDeviceProvider([PICO]),
        permission_gate=FakePermissionGate(granted={PICO.device_id}),
        transport_provider=FakeTransportProvider(),
    )


def format_line(snapshot) -> str:
    record = snapshot.record
    speed = f"1/{record.shutter_speed:.0f}s" if record.shutter_speed else "-"
    efficiency = f"{record.efficiency_pct:.1f}%" if record.efficiency_pct is not None else "-"
    return (
        f"effective={record.effective_ms:8.3f} ms  total={record.total_ms:8.3f} ms  "
        f"speed={speed:>9}  efficiency={efficiency:>6}  signal={record.signal_pct:5.1f}%"
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Shutter tester console monitor")
    parser.add_argument("--duration", type=float, default=0,
                        help="Stop after N seconds (default: run until Ctrl-C)")
    parser.add_argument("--watch", action="store_true",
                        help="Keep polling for attach/detach and reconnect automatically")
    parser.add_argument("--fake", action="store_true",
                        help="Use the simulated tester")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable DEBUG logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    manager = build_fake_manager() if args.fake else create_manager()
    monitor = None
    if args.watch and not args.fake:
        monitor = PortMonitor(PySerialDeviceProvider(), manager)
        monitor.start()

    store = manager.store
    state = manager.request_connect()
    print(f"[{state.value}] {store.status}")

    if state == ConnectionState.DISCONNECTED and monitor is None:
        return 1

    start = time.time()
    version = store.version
    last_status = store.status
    last_record = store.record

    try:
        while not args.duration or time.time() - start < args.duration:
            snapshot = store.wait_for_update(version, timeout=0.5)
            if snapshot is None:
                continue
            version = snapshot.version

            if snapshot.status != last_status:
                print(f"[{snapshot.state.value}] {snapshot.status}")
                last_status = snapshot.status

            if not snapshot.connected:
                if snapshot.state == ConnectionState.DISCONNECTED and monitor is None:
                    break
                continue

            if snapshot.record is not last_record:
                print(format_line(snapshot))
                last_record = snapshot.record

    except KeyboardInterrupt:
        print()

    finally:
        if monitor is not None:
            monitor.stop()
        manager.close()
        print("Disconnected.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
