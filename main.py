import time
import logging
import signal
import argparse

from core.config_loader import load_config
from core.app_context import AppContext

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
running = True


def signal_handler(sig, frame):
    global running
    logger.info("Shutdown signal received")
    running = False


def run_delivery_cycle(ctx: AppContext) -> int:
    """Drain due notifications once. Returns how many were delivered."""
    if ctx.dispatcher is None:
        return 0
    return len(ctx.dispatcher.dispatch_due())


def run_listener(ctx: AppContext, once: bool = False) -> None:
    """
    Subscribe to realtime duel changes and deliver notifications until shutdown.

    The subscription is not retried automatically; when it drops, the next
    cycle requests one explicit resubscription.
    """
    service = ctx.notification_service
    interval = ctx.config.delivery.poll_interval_seconds

    logger.info(f"Listening for duel changes for user {service.user_id}")
    service.start()

    try:
        while running:
            if not service.is_connected:
                logger.warning("Realtime subscription is down; requesting resubscription")
                service.reconnect()

            try:
                delivered = run_delivery_cycle(ctx)
                if delivered:
                    logger.info(f"Delivered {delivered} notification(s)")
            except Exception as e:
                logger.error(f"Error in delivery loop: {e}", exc_info=True)

            if once:
                break
            # Sleep in chunks to allow responsive shutdown
            slept = 0.0
            while running and slept < interval:
                time.sleep(min(1.0, interval - slept))
                slept += 1.0
    finally:
        service.stop()
        logger.info("Listener stopped")


def main():
    parser = argparse.ArgumentParser(description="Duel Notification Listener")
    parser.add_argument('--config', type=str, default='config.yaml', help='Path to config.yaml')
    parser.add_argument('--user-id', type=str, default=None, help='Signed-in user (overrides config)')
    parser.add_argument('--once', action='store_true', help='Run a single delivery cycle and exit')
    parser.add_argument('--verbose', action='store_true')
    args = parser.parse_args()

    config = load_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(logging, config.logging.level.upper(), logging.INFO)
    logging.getLogger().setLevel(level)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    ctx = AppContext.build(config, user_id=args.user_id)
    run_listener(ctx, once=args.once)


if __name__ == "__main__":
    main()
