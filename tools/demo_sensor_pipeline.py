"""Acquisition -> CA -> consumer round trip against a running CA.

Start the CA with IOTCA_APPROVAL_MODE=auto_approve (or approve the requests
with tools/approve_pending.py), then:

    python tools/demo_sensor_pipeline.py --base http://127.0.0.1:3000

Keys are kept in my_keys.json / my_keys_decryption.json so a second run
re-connects with the issued private key instead of onboarding again.
"""
import argparse, json, random, time

from iotca.client import CAClient


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--base", default="http://127.0.0.1:3000")
    ap.add_argument("--readings", type=int, default=3)
    args = ap.parse_args()

    acquisition = CAClient(args.base, "DataAcquisition", "DataAcquisition-001")
    acquisition.load_keys("my_keys.json")
    acquisition.connect(owner="Company123", description="CO2 and temperature acquisition", can_write_data=True)
    acquisition.save_keys("my_keys.json")

    consumer = CAClient(args.base, "DataDecryption", "DataDecryption-001")
    consumer.load_keys("my_keys_decryption.json")
    consumer.connect(owner="Company123", description="Decrypts stored readings")
    consumer.save_keys("my_keys_decryption.json")

    for i in range(args.readings):
        reading = {"timestamp": int(time.time()), "co2_ppm": round(random.uniform(380, 900), 1), "seq": i}
        ack = acquisition.submit("co2_readings", reading)
        print("Stored:", ack["recordId"], "with storage key", ack["storageKeyId"])

    records = consumer.request_data(acquisition.service_id, collection="co2_readings")
    print("Consumer read", len(records), "records")
    for r in records:
        print(json.dumps(r, indent=2))


if __name__ == "__main__":
    main()
