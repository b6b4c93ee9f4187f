"""
Device Connector: device-resident control-plane agent.

Authenticates the device with the OAuth 2.0 Device Authorization Grant, opens an
MQTT session with the resulting credential, and serves remote commands that
arrive on <base>/post topics, answering on <base>.
"""
