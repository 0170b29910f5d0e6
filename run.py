#!/usr/bin/env python3
"""
Game Economy Service Entry Point

Starts the FastAPI server with the economy system. The system (and its
store handle) is created here and closed on shutdown.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from game_economy.api import run_server
from game_economy.config import get_config
from game_economy.logging_config import setup_logging
from game_economy.system import EconomySystem, set_economy_system


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)

    print("🪙 Starting Game Economy Service...")
    print("💶 Currencies: EURO, GOLD, RON (4 decimal places)")
    print("🏛️  Treasury tax withholding active")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    system = EconomySystem(config)
    set_economy_system(system)
    try:
        run_server(system, host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Game Economy Service...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
    finally:
        system.close()
