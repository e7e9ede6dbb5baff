"""Run checkouts end to end against the simulated gateway.

Useful for eyeballing the state machine and the fallback policy without a
browser or a real gateway account.
"""

import argparse
import asyncio
import json
import random
from collections import Counter

from lessonpay.common.logging import configure_logging
from lessonpay.common.money import to_minor_units
from lessonpay.services.checkout.gateway import SimulatedGatewayAdapter
from lessonpay.services.checkout.schemas import Buyer, Item
from lessonpay.services.checkout.service import PaymentFlowController
from lessonpay.services.checkout.sink import LoggingOutcomeSink
from lessonpay.services.checkout.verification import VerificationClient


async def run(args: argparse.Namespace) -> Counter:
    """Run `args.count` sequential checkouts for one buyer and tally outcomes."""

    gateway = SimulatedGatewayAdapter(
        delay_seconds=args.delay,
        success_rate=args.success_rate,
        rng=random.Random(args.seed),
    )
    verifier = VerificationClient(
        url=args.verification_url,
        fallback=args.fallback,
        timeout_seconds=args.timeout,
    )
    controller = PaymentFlowController(gateway, verifier, LoggingOutcomeSink())
    buyer = Buyer(id=args.buyer_id, email=args.email)
    item = Item(
        id=args.item_id,
        title="Demo lesson",
        price_minor_units=to_minor_units(args.price, args.currency),
        currency=args.currency,
    )

    tally: Counter = Counter()
    for _ in range(args.count):
        outcome = await controller.start_payment(buyer, item)
        tally[outcome.kind] += 1
        print(json.dumps(outcome.model_dump(mode="json"), indent=2))
    return tally


def main() -> None:
    """Parse CLI args and run the simulated checkouts."""

    parser = argparse.ArgumentParser(description="Simulate lesson checkouts.")
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--buyer-id", default="S1", help="prefix with force-dismiss/force-error to pin the path")
    parser.add_argument("--email", default="s1@example.com")
    parser.add_argument("--item-id", default="L1")
    parser.add_argument("--price", default="5000", help="price in major units, e.g. 5000 naira")
    parser.add_argument("--currency", default="NGN")
    parser.add_argument("--delay", type=float, default=0.5)
    parser.add_argument("--success-rate", type=float, default=0.8)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--verification-url", default=None)
    parser.add_argument("--timeout", type=float, default=5.0)
    parser.add_argument("--fallback", choices=["strict", "permissive"], default="strict")
    args = parser.parse_args()

    configure_logging()
    tally = asyncio.run(run(args))
    print(f"outcomes={dict(tally)}")


if __name__ == "__main__":
    main()
