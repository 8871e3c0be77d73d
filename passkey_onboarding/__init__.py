"""Passkey onboarding service package.

To run the Flask app:
    from passkey_onboarding.flask_app import create_app

To use Keycloak services:
    from passkey_onboarding.core.keycloak import UserService, KeycloakClient

To drive a registration without HTTP:
    from passkey_onboarding.core.registration import RegistrationSaga
"""
# Note: flask_app is not imported here so CLI scripts can use core without Flask
