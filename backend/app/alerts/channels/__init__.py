"""
channels — Push delivery backends.

Each sender exposes:
    async send(message: PushMessage) → provider message id

and raises PushDeliveryError when the provider rejects one message.
Senders are stateless per message; failure isolation and counting live
in the dispatcher.
"""
