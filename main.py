from typing import Optional

import uvicorn
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PINRELAY_", extra="ignore")

    disable_ssl: bool = True
    ssl_cert: Optional[str] = None
    ssl_key: Optional[str] = None
    ssl_password: Optional[str] = None
    workers: int = 1
    log_level: str = Field(default="info")
    port: int = Field(
        default=5000,
        ge=1,
        lt=65536,
        validation_alias=AliasChoices("PINRELAY_PORT", "PORT"),
    )
    proxy_ip: Optional[str] = None
    proxy_headers: bool = True


def main():
    prod_settings = EnvSettings()
    args = {}
    print(f"Running on port {prod_settings.port}")
    if not prod_settings.disable_ssl:
        assert prod_settings.ssl_key and prod_settings.ssl_cert, (
            "You must either provide ssl key path and ssl certificate through"
            " PINRELAY_SSL_KEY and PINRELAY_SSL_CERT env. variables or"
            " set PINRELAY_DISABLE_SSL to True"
        )
        args.update(
            ssl_keyfile=prod_settings.ssl_key,
            ssl_certfile=prod_settings.ssl_cert,
            ssl_keyfile_password=prod_settings.ssl_password,
        )
    uvicorn.run(
        "pinrelay.app:create_production_app",
        factory=True,
        reload=False,
        port=prod_settings.port,
        log_level=prod_settings.log_level,
        workers=prod_settings.workers,
        host="0.0.0.0",
        forwarded_allow_ips=prod_settings.proxy_ip,
        proxy_headers=prod_settings.proxy_headers,
        **args,
    )


if __name__ == "__main__":
    main()
