"""Generate sample shareholder-registry CSV files for load testing the importer."""
import csv
import random
import sys

HEADER = [
    "Orgnr",
    "Selskap",
    "Aksjeklasse",
    "Navn aksjonær",
    "Fødselsår/orgnr",
    "Postnr/sted",
    "Landkode",
    "Antall aksjer",
]


def generate_csv(num_rows: int, output_file: str, headerless: bool = False) -> None:
    """
    Generate a semicolon-delimited registry export with random holdings.

    Args:
        num_rows: Number of holding rows to generate
        output_file: Output CSV file path
        headerless: Write the 9-column positional layout without a header row
    """
    prefixes = ["NORDIC", "FJORD", "VIKING", "POLAR", "KYST", "FJELL", "BERGEN", "TROMS"]
    sectors = ["INVEST", "HOLDING", "EIENDOM", "SHIPPING", "TEKNOLOGI", "KRAFT"]
    suffixes = ["AS", "ASA", "HOLDING AS"]
    first_names = ["KARI", "OLA", "INGRID", "LARS", "SIGRID", "MAGNUS", "NORA", "ERIK"]
    last_names = ["HANSEN", "JOHANSEN", "OLSEN", "LARSEN", "BERG", "HAUGEN", "DAHL"]
    places = ["0150 OSLO", "5003 BERGEN", "7010 TRONDHEIM", "9008 TROMSØ", "4006 STAVANGER"]
    share_classes = ["Ordinære aksjer", "A-aksjer", "B-aksjer"]

    companies = [
        (f"{random.randint(810000000, 999999999)}",
         f"{random.choice(prefixes)} {random.choice(sectors)} {random.choice(suffixes)}")
        for _ in range(max(1, num_rows // 20))
    ]

    with open(output_file, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, delimiter=";")
        if not headerless:
            writer.writerow(HEADER)

        for i in range(num_rows):
            orgnr, company = random.choice(companies)
            share_class = random.choice(share_classes)
            shares = random.randint(1, 250000)
            place = random.choice(places)
            if random.random() < 0.2:
                holder_id, holder = random.choice(companies)
            else:
                holder_id = str(random.randint(1930, 2005))
                holder = f"{random.choice(first_names)} {random.choice(last_names)}"

            if headerless:
                writer.writerow(
                    [shares, holder_id, random.randint(1, 9999), orgnr, company,
                     share_class, holder, place, "NOR"]
                )
            else:
                writer.writerow([orgnr, company, share_class, holder, holder_id, place, "NOR", shares])

            # Print progress every 100,000 rows
            if (i + 1) % 100000 == 0:
                print(f"Generated {i+1:,} rows...")

    print(f"✅ Successfully generated {num_rows:,} holdings in {output_file}")


def main():
    """Main function to parse arguments and generate CSV."""
    if len(sys.argv) < 2:
        print("Usage: python generate_csv.py <num_rows> [output_file] [--headerless]")
        print("Example: python generate_csv.py 2000000 aksjeeierbok_2m.csv")
        sys.exit(1)

    args = [arg for arg in sys.argv[1:] if arg != "--headerless"]
    headerless = "--headerless" in sys.argv
    num_rows = int(args[0])
    output_file = args[1] if len(args) > 1 else f"aksjeeierbok_{num_rows}.csv"

    print(f"Generating registry CSV with {num_rows:,} rows...")
    generate_csv(num_rows, output_file, headerless=headerless)


if __name__ == "__main__":
    main()
