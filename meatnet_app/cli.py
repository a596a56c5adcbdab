#!/usr/bin/env python3
"""
Command-Line Interface for the MeatNet Controller

Usage:
    meatnet                            # Run with default config
    meatnet -c config.yaml             # Run with custom config
    meatnet --api                      # Run with REST API server
    meatnet --simulate 4               # Simulate four probes
"""

import argparse
import sys

from .controller import MeatNetController
from .models import EngineConfig
from .scheduler import ThreadedScheduler
from .simulation import SimulatedTransport


def main():
    """Command-line entry point."""
    parser = argparse.ArgumentParser(
        description="MeatNet Controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  meatnet                                  # Run with default config
  meatnet -c config.yaml                   # Run with custom config
  meatnet --simulate 4 --repeaters 2       # Simulated radio with 4 probes, 2 repeaters
  meatnet --api                            # Run with REST API server
  meatnet --api --api-port 8000            # Custom API port
        """
    )
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--api",
        action="store_true",
        help="Run with REST API server for web access",
    )
    parser.add_argument(
        "--api-host",
        default=None,
        help="API server host (default: from config or 0.0.0.0)",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="API server port (default: from config or 8080)",
    )
    parser.add_argument(
        "--simulate",
        type=int,
        default=None,
        metavar="N",
        help="Number of simulated probes (default: from config or 2)",
    )
    parser.add_argument(
        "--repeaters",
        type=int,
        default=None,
        metavar="N",
        help="Number of simulated repeater nodes (default: from config or 1)",
    )

    args = parser.parse_args()

    # Load config
    try:
        config = EngineConfig.from_yaml(args.config)
    except FileNotFoundError:
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)
    except Exception as e:
        print(f"Error loading config: {e}")
        sys.exit(1)

    if args.simulate is not None:
        if args.simulate < 0:
            print(f"Error: --simulate must be >= 0, got {args.simulate}")
            sys.exit(1)
        config.simulation.probes = args.simulate
    if args.repeaters is not None:
        if args.repeaters < 0:
            print(f"Error: --repeaters must be >= 0, got {args.repeaters}")
            sys.exit(1)
        config.simulation.repeaters = args.repeaters

    # Create controller on a simulated radio
    scheduler = ThreadedScheduler()
    transport = SimulatedTransport(scheduler, config.simulation)
    controller = MeatNetController(config, transport, scheduler)

    print("\n" + "=" * 50)
    print("MEATNET CONTROLLER")
    print("=" * 50)
    print(f"Simulated probes:    {config.simulation.probes}")
    print(f"Simulated repeaters: {config.simulation.repeaters}")
    print(f"Auto-connect nodes:  {config.enabled}")

    # Handle --api or config.api.enabled
    if args.api or config.api.enabled:
        api_host = args.api_host or config.api.host
        api_port = args.api_port or config.api.port

        print(f"API Host:            {api_host}")
        print(f"API Port:            {api_port}")
        print("=" * 50)

        controller.run_with_api(
            api_host=api_host,
            api_port=api_port,
        )
        sys.exit(0)

    print("=" * 50)

    # Run main loop (no API)
    controller.run()


if __name__ == "__main__":
    main()
