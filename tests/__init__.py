"""
tests/
------
ChartBridge — EHR Patient Dashboard Proxy — Test Package
--------------------------------------------------------
Test suites for the proxy. The remote EHR API is always replaced by an
``httpx.MockTransport``; nothing here touches the network.

Test Modules:
    - test_config.py: environment loading and cookie policy
    - test_resource_mapper.py: flattened views, list pages, edit merge
    - test_token_store.py: memory, cookie-jar and response-cookie stores
    - test_ehr_client.py: grant and Patient requests, status mapping
    - test_session_client.py: single-flight refresh and retry
    - test_gateways.py: auth and resource gateways
    - test_main.py: HTTP routes and the end-to-end refresh flow

Project: ChartBridge — EHR Patient Dashboard Proxy
"""
