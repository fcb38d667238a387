from .base import PaymentProvider, ProviderRequest, ProviderResult


class ManualTransferProvider(PaymentProvider):
    """
    Rails without an API (D-Money USSD, bank transfer).

    The client pays out of band using the transaction reference; an operator
    confirms the payment once the funds are seen on the merchant account.
    """

    supports_refunds = False

    INSTRUCTIONS = {
        'dmoney': (
            "1. Dial *770#\n2. Select \"Pay\"\n3. Enter merchant code: DJIBGO\n"
            "4. Amount: {amount} {currency}\n5. Reference: {reference}\n6. Confirm with your PIN"
        ),
        'bank': (
            "Transfer {amount} {currency} to the DjibGo merchant account "
            "quoting the reference {reference}."
        ),
    }

    def __init__(self, name: str):
        if name not in self.INSTRUCTIONS:
            raise ValueError(f"Unknown manual rail: {name}")
        self.name = name

    def submit(self, request: ProviderRequest) -> ProviderResult:
        instructions = self.INSTRUCTIONS[self.name].format(
            amount=request.amount,
            currency=request.currency,
            reference=request.transaction_reference,
        )
        return ProviderResult(
            success=True,
            raw_response={'rail': self.name, 'reference': request.transaction_reference},
            pending=True,
            instructions=instructions,
        )
