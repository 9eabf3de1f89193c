"""
Domain Services

Importe os módulos diretamente (ex: taxibot.domain.services.ride_service);
este pacote não reexporta nada para não criar import circular com state_machine.
"""
