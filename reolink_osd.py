#!/usr/bin/env python3
"""
Simple script to show or update the OSD text of a Reolink camera.

Uses username/password query parameters on every request (no session
token), so it can be run next to the sync daemon without disturbing its
session.
"""

import argparse
import sys
from typing import List, Optional

import requests
import urllib3

from overlay_sources import OverlayPosition
from reolink_client import (
    API_PATH,
    OsdDocument,
    ReolinkError,
    build_command,
    decode_envelopes,
)


class ReolinkOsdClient:
    def __init__(self, host: str, username: str, password: str,
                 port: int = 80, https: bool = False, channel: int = 0):
        """
        Initialize blocking Reolink OSD client.

        Args:
            host: Camera IP address or hostname
            username: Camera username
            password: Camera password
            port: Camera HTTP(S) port
            https: Use https instead of http
            channel: Video channel number (default: 0)
        """
        self.host = host
        self.username = username
        self.password = password
        self.channel = channel
        scheme = 'https' if https else 'http'
        self.url = f"{scheme}://{host}:{port}{API_PATH}"

        # Persistent session for connection pooling (HTTP keep-alive)
        self.session = requests.Session()
        self.session.verify = False

    def _send(self, commands: List[dict], timeout: float = 10):
        params = {
            'cmd': commands[0]['cmd'],
            'username': self.username,
            'password': self.password,
        }
        response = self.session.post(self.url, params=params, json=commands, timeout=timeout)
        response.raise_for_status()
        return decode_envelopes(response.json())

    def get_device_name(self, timeout: float = 10) -> Optional[str]:
        """
        Read the device name (the text of the channel-name overlay).

        Returns:
            Device name, or None on error
        """
        try:
            results = self._send([build_command('GetDevName', {'channel': self.channel})], timeout)
            value = results.value_of('GetDevName') or {}
            return (value.get('DevName') or {}).get('name')
        except (requests.exceptions.RequestException, ValueError, ReolinkError) as e:
            print(f"Error getting device name: {e}", file=sys.stderr)
            return None

    def get_osd(self, timeout: float = 10) -> Optional[OsdDocument]:
        """
        Get current OSD configuration.

        Returns:
            OsdDocument, or None on error
        """
        try:
            results = self._send([build_command('GetOsd', {'channel': self.channel}, action=1)], timeout)
            response = results.get('GetOsd')
            if response is None or not response.ok:
                print("Error getting OSD: device rejected GetOsd", file=sys.stderr)
                return None
            return OsdDocument.from_response(response)
        except (requests.exceptions.RequestException, ValueError, ReolinkError) as e:
            print(f"Error getting OSD: {e}", file=sys.stderr)
            return None

    def update_osd_text(self, new_text: str, position: Optional[str] = None,
                        enable: bool = True, verbose: bool = False,
                        timeout: float = 10) -> bool:
        """
        Update the OSD text with a read-modify-write of the OSD document.

        Args:
            new_text: New text to display
            position: OSD position (None to keep current)
            enable: Enable the overlay if True
            verbose: Print the document being sent

        Returns:
            True on success, False on error
        """
        # First, get current OSD so untouched fields are echoed back
        doc = self.get_osd(timeout)
        if doc is None:
            return False

        doc = doc.merged(enable=True if enable else None, position=position, name=new_text)
        if verbose:
            print(f"Sending OSD: {doc.to_param()}", file=sys.stderr)

        try:
            results = self._send([build_command('SetOsd', {'Osd': doc.to_param()})], timeout)
            results.value_of('SetOsd')

            results = self._send([build_command(
                'SetDevName', {'channel': self.channel, 'DevName': {'name': new_text}}
            )], timeout)
            results.value_of('SetDevName')
            return True

        except (requests.exceptions.RequestException, ValueError, ReolinkError) as e:
            print(f"Error updating OSD: {e}", file=sys.stderr)
            return False


def main():
    """Main entry point for CLI usage."""
    parser = argparse.ArgumentParser(
        description='Show or update Reolink camera OSD text via api.cgi',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s 192.168.1.100 admin password123 --show
  %(prog)s 192.168.1.100 admin password123 --text "Front Door"
  %(prog)s 192.168.1.100 admin password123 --text "21 C" --position "Upper Right"
        '''
    )

    parser.add_argument('host', help='Camera IP address or hostname')
    parser.add_argument('username', help='Camera username')
    parser.add_argument('password', help='Camera password')

    parser.add_argument('-p', '--port', type=int, default=None,
                        help='HTTP(S) port (default: 80, or 443 with --https)')
    parser.add_argument('--https', action='store_true', help='Use https')
    parser.add_argument('-c', '--channel', type=int, default=0,
                        help='Video channel number (default: 0)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose debug output')

    action_group = parser.add_mutually_exclusive_group(required=True)
    action_group.add_argument('-s', '--show', action='store_true',
                              help='Show device name and OSD state')
    action_group.add_argument('-t', '--text', type=str,
                              help='New text to display')

    parser.add_argument('--position', choices=[p.value for p in OverlayPosition],
                        help='OSD position (default: keep current)')
    parser.add_argument('--no-enable', action='store_true',
                        help='Do not enable the overlay when updating (default: enable)')

    args = parser.parse_args()

    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    port = args.port if args.port is not None else (443 if args.https else 80)
    client = ReolinkOsdClient(args.host, args.username, args.password,
                              port=port, https=args.https, channel=args.channel)

    if args.show:
        name = client.get_device_name()
        doc = client.get_osd()
        if name is None or doc is None:
            print("Could not read OSD state")
            return 1
        print(f"Device name: {name}")
        print(f"OSD text:    {doc.name} ({'enabled' if doc.enable else 'disabled'})")
        print(f"Position:    {doc.position}")
        if args.verbose:
            print(f"Document:    {doc.to_param()}")
        return 0

    success = client.update_osd_text(
        args.text,
        position=args.position,
        enable=not args.no_enable,
        verbose=args.verbose,
    )
    return 0 if success else 1


if __name__ == '__main__':
    sys.exit(main())
