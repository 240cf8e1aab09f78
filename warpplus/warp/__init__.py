"""WARP keys, endpoints, registration API and identity storage."""