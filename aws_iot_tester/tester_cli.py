#!/usr/bin/env python3
"""
AWS IoT test client CLI.

This is the main entry point that:
1. Resolves endpoint, credentials and topics from options and saved config
2. Builds the AWS IoT client for the device certificate
3. Maps single key presses to connect / disconnect / subscribe / publish
"""

import asyncio
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

import click

from . import __version__
from .client.aws_client import AWSClient
from .client.paho_client import PahoMQTTClient
from .utils.cert_utils import find_ca_path
from .utils.config_manager import ConfigManager
from .utils.debug_logger import debug_log, debug_step
from .utils.exceptions import MQTTError, MQTTValidationError
from .utils.logger import log, setup_logging
from .utils.validators import validate_client_id, validate_endpoint, validate_publish_topic, validate_topic

# Get logger
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / '.aws-iot-tester'

# Delivered by the key reader when the terminal reports Ctrl-C or Ctrl-D
INTERRUPT_KEY = '\x03'
EOF_KEY = '\x04'

# Global client for signal handling
client: Optional[AWSClient] = None


@dataclass(frozen=True)
class TesterSettings:
    endpoint: str
    cert_path: str
    key_path: str
    ca_path: str
    client_id: str
    sub_topics: Tuple[str, ...]
    pub_topic: str
    message: str
    log_packets: bool = True


@debug_step("Resolving settings")
def resolve_settings(config_manager: ConfigManager) -> TesterSettings:
    """
    Build validated settings from the saved configuration.

    The root CA falls back to a well known file next to the certificate.

    Raises:
        MQTTValidationError: A required value is missing or invalid
    """
    required = {
        'endpoint': '--endpoint',
        'cert_path': '--cert-path',
        'key_path': '--key-path',
        'client_id': '--client-id',
        'pub_topic': '--pub-topic',
    }
    missing = [flag for key, flag in required.items() if not config_manager.get(key)]
    if missing:
        raise MQTTValidationError(f"Missing required settings: {', '.join(missing)}")

    cert_path = config_manager.get('cert_path')
    ca_path = config_manager.get('ca_path') or find_ca_path(cert_path)
    if not ca_path:
        raise MQTTValidationError("Root CA not found next to the certificate, use --ca-path")

    sub_topics = tuple(config_manager.get_sub_topics())
    if not sub_topics:
        raise MQTTValidationError("At least one --sub-topic is required")

    settings = TesterSettings(
        endpoint=config_manager.get('endpoint'),
        cert_path=cert_path,
        key_path=config_manager.get('key_path'),
        ca_path=ca_path,
        client_id=config_manager.get('client_id'),
        sub_topics=sub_topics,
        pub_topic=config_manager.get('pub_topic'),
        message=config_manager.get('message', ConfigManager.DEFAULT_MESSAGE),
        log_packets=bool(config_manager.get('log_packets', True)),
    )

    validate_endpoint(settings.endpoint)
    validate_client_id(settings.client_id)
    for topic in settings.sub_topics:
        validate_topic(topic)
    validate_publish_topic(settings.pub_topic)
    return settings


def usage(settings: TesterSettings) -> str:
    return (
        "\n"
        "    ==== Usage ====\n"
        f"    Press 'c' to connect to AWS IoT broker {settings.endpoint}.\n"
        "    Press 'd' to disconnect.\n"
        f"    Press 's' to subscribe to topics {','.join(settings.sub_topics)}.\n"
        f"    Press 'p' to publish a message to topic {settings.pub_topic}.\n"
        "    Press 'h' to show this help again.\n"
        "    Press 'q' to exit the application.\n"
    )


class KeyCommandLoop:
    """Reads single key presses and runs the matching client operation."""

    def __init__(self, aws_client: AWSClient, settings: TesterSettings,
                 read_key: Callable[[], str] = click.getchar):
        self.client = aws_client
        self.settings = settings
        self.read_key = read_key
        self.running = True

    async def _next_key(self) -> str:
        """Read one key in a daemon thread so a pending read never blocks exit."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(value):
            if not future.done():
                future.set_result(value)

        def fail(error):
            if not future.done():
                future.set_exception(error)

        def reader():
            try:
                key = self.read_key()
            except KeyboardInterrupt:
                key = INTERRUPT_KEY
            except EOFError:
                key = EOF_KEY
            except Exception as e:
                loop.call_soon_threadsafe(fail, e)
                return
            loop.call_soon_threadsafe(deliver, key)

        threading.Thread(target=reader, name='key-reader', daemon=True).start()
        return await future

    async def handle_key(self, key: str) -> bool:
        """
        Run the operation bound to a key.

        Returns:
            bool: False once the loop should stop
        """
        if key in (INTERRUPT_KEY, EOF_KEY):
            log('Exiting...')
            self.client.end()
            return False

        key_pressed = key.strip()
        logger.debug(f"Key pressed: {key_pressed!r}")

        if key_pressed == 'c':
            log('Connecting to AWS IoT...')
            await self.client.connect(self.settings.endpoint)
        elif key_pressed == 'd':
            log('Disconnecting from AWS IoT...')
            self.client.end()
        elif key_pressed == 'p':
            await self.client.publish(self.settings.pub_topic, self.settings.message)
        elif key_pressed == 's':
            await self.client.subscribe()
        elif key_pressed == 'h':
            click.echo(usage(self.settings))
        elif key_pressed == 'q':
            log('Exiting...')
            self.client.end()
            return False
        else:
            log('Invalid key. Please press "c", "d", "s", "p", or "q".')
        return True

    async def run(self) -> int:
        """Run until 'q', Ctrl-C or an unexpected error. Returns the exit code."""
        while self.running:
            try:
                key = await self._next_key()
                self.running = await self.handle_key(key)
            except Exception as e:
                logger.exception("Unexpected error in key loop")
                log('Error:', str(e))
                self.client.end()
                return 1
        return 0


def cleanup_and_exit(code: int = 0):
    """End the connection and exit."""
    if client is not None:
        client.end()
    sys.exit(code)


def signal_handler(signum, frame):
    """Handle interrupt signals."""
    logger.debug(f"Received signal {signum}")
    cleanup_and_exit()


@click.command()
@click.option('--endpoint', help='AWS IoT endpoint, e.g. abc123-ats.iot.eu-west-1.amazonaws.com')
@click.option('--cert-path', type=click.Path(dir_okay=False), help='Path to the device certificate')
@click.option('--key-path', type=click.Path(dir_okay=False), help='Path to the device private key')
@click.option('--ca-path', type=click.Path(dir_okay=False),
              help='Path to the AWS IoT root CA (default: looked up next to the certificate)')
@click.option('--client-id', help='MQTT client id, normally the thing name')
@click.option('--sub-topic', 'sub_topics', multiple=True,
              help='Topic to subscribe to (can specify multiple times)')
@click.option('--pub-topic', help='Topic to publish to')
@click.option('--message', help='Message to publish')
@click.option('--config-dir', default=str(DEFAULT_CONFIG_DIR),
              help='Configuration directory (default: ~/.aws-iot-tester)')
@click.option('--packets/--no-packets', default=None, help='Log every packet sent and received')
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.version_option(__version__)
@debug_log
def main(endpoint: Optional[str], cert_path: Optional[str], key_path: Optional[str],
         ca_path: Optional[str], client_id: Optional[str], sub_topics: Tuple[str, ...],
         pub_topic: Optional[str], message: Optional[str], config_dir: str,
         packets: Optional[bool], debug: bool):
    """
    AWS IoT test client - exercise an MQTT over TLS connection by key press.

    Options given on the command line are saved and reused on the next run.

    Examples:
        aws-iot-tester --endpoint abc123-ats.iot.eu-west-1.amazonaws.com \\
            --cert-path device.pem.crt --key-path private.pem.key \\
            --client-id my-thing --sub-topic my-thing/in --pub-topic my-thing/out
        aws-iot-tester
    """
    global client

    # Create configuration directory with proper error handling
    try:
        config_path = Path(config_dir).expanduser().resolve()
        config_path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        click.echo(click.style(f"✗ Error: Permission denied creating config directory at {config_dir}", fg='red'))
        click.echo("Please specify a different config directory using --config-dir")
        sys.exit(1)
    except OSError as e:
        click.echo(click.style(f"✗ Error creating config directory: {str(e)}", fg='red'))
        sys.exit(1)

    tester_logger = setup_logging(str(config_path), "DEBUG" if debug else "INFO")
    app_logger = tester_logger.app_logger
    loop = None

    try:
        config_manager = ConfigManager(config_path)
        config_manager.update(
            endpoint=endpoint,
            cert_path=cert_path,
            key_path=key_path,
            ca_path=ca_path,
            client_id=client_id,
            sub_topics=list(sub_topics) if sub_topics else None,
            pub_topic=pub_topic,
            message=message,
            log_packets=packets,
        )

        try:
            settings = resolve_settings(config_manager)
            client = AWSClient(
                PahoMQTTClient(),
                settings.cert_path,
                settings.key_path,
                settings.ca_path,
                settings.client_id,
                list(settings.sub_topics),
                log_packets=settings.log_packets,
            )
        except MQTTError as e:
            app_logger.error(f"Startup failed: {str(e)}")
            click.echo(click.style(f"✗ Error: {str(e)}", fg='red'))
            sys.exit(1)

        app_logger.info(f"Endpoint: {settings.endpoint}")
        app_logger.info(f"Config directory: {config_path}")
        click.echo(usage(settings))

        # Set up signal handlers
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        exit_code = loop.run_until_complete(KeyCommandLoop(client, settings).run())
        sys.exit(exit_code)

    except KeyboardInterrupt:
        cleanup_and_exit()
    finally:
        if loop is not None:
            loop.close()
        tester_logger.cleanup()


if __name__ == '__main__':
    main()
