#!/usr/bin/env python3
"""Test client for the Speedwire bridge D-Bus service.

Usage:
    poetry run python tools/dbus_client.py [SERVICE]
    poetry run python tools/dbus_client.py -f [SERVICE]
    poetry run python tools/dbus_client.py --session [SERVICE]

Options:
    -f, --follow    Keep the connection open and print ItemsChanged signals
    --session       Use the session bus instead of the system bus

Defaults to com.victronenergy.grid.cgwacs_ttyUSB0_di30_mb1.
"""

import argparse
import asyncio
from datetime import datetime

from dbus_fast import BusType, Message, MessageType
from dbus_fast.aio import MessageBus

BUS_ITEM = "com.victronenergy.BusItem"
DEFAULT_SERVICE = "com.victronenergy.grid.cgwacs_ttyUSB0_di30_mb1"


def print_items(items: dict) -> None:
    """Print a GetItems/ItemsChanged payload, one path per line."""
    for path in sorted(items):
        text = items[path]["Text"].value
        value = items[path]["Value"].value
        print(f"  {path:28s} {text:>16s}  ({value!r})")


def print_summary(items: dict) -> None:
    parts = []
    for phase in ("L1", "L2", "L3"):
        power = items.get(f"/Ac/{phase}/Power")
        voltage = items.get(f"/Ac/{phase}/Voltage")
        if power and voltage:
            parts.append(f"{phase}:{power['Value'].value:>7.1f}W {voltage['Value'].value:.0f}V")
    total = items.get("/Ac/Power")
    if total:
        parts.append(f"Total:{total['Value'].value:>7.1f}W")
    print(f"  {' | '.join(parts)}")


async def main(service: str, follow: bool, session: bool) -> None:
    bus_type = BusType.SESSION if session else BusType.SYSTEM
    bus = await MessageBus(bus_type=bus_type).connect()

    print(f"Querying {service}...")
    reply = await bus.call(
        Message(destination=service, path="/", interface=BUS_ITEM, member="GetItems")
    )
    if reply.message_type == MessageType.ERROR:
        print(f"GetItems failed: {reply.error_name} {reply.body}")
        bus.disconnect()
        return

    items = reply.body[0]
    print()
    print("=== Items ===")
    print_items(items)
    print()
    print("=== Summary ===")
    print_summary(items)

    if not follow:
        bus.disconnect()
        return

    def on_message(msg: Message) -> None:
        if msg.message_type != MessageType.SIGNAL or msg.member != "ItemsChanged":
            return
        ts = datetime.now().strftime("%H:%M:%S")
        print(f"[{ts}] {len(msg.body[0])} paths changed:", flush=True)
        print_items(msg.body[0])

    await bus.call(
        Message(
            destination="org.freedesktop.DBus",
            path="/org/freedesktop/DBus",
            interface="org.freedesktop.DBus",
            member="AddMatch",
            signature="s",
            body=[f"type='signal',sender='{service}',interface='{BUS_ITEM}',member='ItemsChanged'"],
        )
    )
    bus.add_message_handler(on_message)

    print()
    print("=== Following updates (Ctrl+C to stop) ===", flush=True)
    try:
        await bus.wait_for_disconnect()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        bus.disconnect()
        print("\nDisconnected.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Speedwire bridge D-Bus test client")
    parser.add_argument("service", nargs="?", default=DEFAULT_SERVICE, help="D-Bus service name")
    parser.add_argument(
        "-f", "--follow", action="store_true", help="Keep connection and print ItemsChanged"
    )
    parser.add_argument("--session", action="store_true", help="Use the session bus")
    args = parser.parse_args()
    asyncio.run(main(args.service, args.follow, args.session))
