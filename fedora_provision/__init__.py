"""
Fedora Provision
----------------

Journaled, resumable post-install provisioning for Fedora Workstation.

A catalog of ordered steps is run as root. Every step declares whether its
failure is fatal, which identity it runs as, and which files it overwrites.
Outcomes are appended to a durable journal after every step so an
interrupted or aborted run can be resumed once the problem is fixed.
"""

APP_NAME = "Fedora Provision"
APP_SUBTITLE = "Things To Do After Installing Fedora"
VERSION = "1.0.0"
